"""meterctl operator CLI."""
