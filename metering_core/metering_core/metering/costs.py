"""Deterministic cost calculation and compute-unit weighting.

All arithmetic is done in :class:`~decimal.Decimal`.  Float quantities are
converted through ``str()`` (shortest round-trip representation), so the
same float always maps to the same decimal and an invoice can be re-derived
from its stored quantities to the last digit.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from metering_core.config import Settings
from metering_core.errors import ValidationError
from metering_core.models.billing import CostBreakdown

_FOUR_PLACES = Decimal("0.0001")


@dataclass(frozen=True)
class Rates:
    """Per-unit prices in USD."""

    traffic_gb: Decimal = Decimal("0.10")
    storage_gb_month: Decimal = Decimal("0.05")
    compute_unit: Decimal = Decimal("0.001")

    @classmethod
    def from_settings(cls, settings: Settings) -> Rates:
        return cls(
            traffic_gb=settings.rate_traffic_gb,
            storage_gb_month=settings.rate_storage_gb_month,
            compute_unit=settings.rate_compute_unit,
        )


def _to_decimal(name: str, value: float | int | Decimal) -> Decimal:
    dec = value if isinstance(value, Decimal) else Decimal(str(value))
    if not dec.is_finite():
        raise ValidationError(f"{name} must be a finite number, got {value!r}")
    if dec < 0:
        raise ValidationError(f"{name} must be non-negative, got {value!r}")
    return dec


def calculate_cost(
    traffic_gb: float | Decimal,
    storage_gb_month: float | Decimal,
    compute_units: float | Decimal,
    rates: Rates,
) -> CostBreakdown:
    """Price the three usage dimensions.

    Each component is ``quantity x rate`` rounded half-up to 4 decimal
    places; ``total`` is the exact sum of the rounded components, so the
    parts always add up to the whole.

    Raises
    ------
    ValidationError
        If any quantity is negative or not finite.
    """
    traffic = (_to_decimal("traffic_gb", traffic_gb) * rates.traffic_gb).quantize(_FOUR_PLACES, ROUND_HALF_UP)
    storage = (_to_decimal("storage_gb_month", storage_gb_month) * rates.storage_gb_month).quantize(
        _FOUR_PLACES, ROUND_HALF_UP
    )
    compute = (_to_decimal("compute_units", compute_units) * rates.compute_unit).quantize(_FOUR_PLACES, ROUND_HALF_UP)
    return CostBreakdown(traffic=traffic, storage=storage, compute=compute, total=traffic + storage + compute)


def weight_for(job_type: str | None, weights: Mapping[str, float]) -> float:
    """Multiplier for *job_type*; unknown or missing job types use ``default``."""
    if job_type and job_type in weights:
        return weights[job_type]
    return weights.get("default", 1.0)
