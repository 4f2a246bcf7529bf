"""API router modules for the metering control plane."""

from __future__ import annotations

from api.routers import alerts, health, invoices, usage

__all__ = [
    "alerts",
    "health",
    "invoices",
    "usage",
]
