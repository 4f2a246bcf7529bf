"""HTTP control plane for the usage metering engine."""

__version__ = "0.1.0"
