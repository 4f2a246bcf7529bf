"""Usage metering pipeline: ingestion, aggregation, invoicing and alerts.

Producers record usage through the ingestion gate; the period aggregator
rolls the ledger up per month; the invoice generator freezes aggregations
into invoices.
"""

from metering_core.metering.aggregation import PeriodAggregator
from metering_core.metering.alerts import AlertEvaluator, AlertNotifier, LoggingNotifier
from metering_core.metering.costs import Rates, calculate_cost, weight_for
from metering_core.metering.export import ExportFormat, UsageExporter, export_events
from metering_core.metering.ingestion import UsageIngestionGate
from metering_core.metering.invoicing import InvoiceGenerator
from metering_core.metering.resolver import BillingEntityResolver, resolve_billing_entity
from metering_core.metering.storage import StorageSnapshotRecorder, time_weighted_average

__all__ = [
    "AlertEvaluator",
    "AlertNotifier",
    "BillingEntityResolver",
    "ExportFormat",
    "InvoiceGenerator",
    "LoggingNotifier",
    "PeriodAggregator",
    "Rates",
    "StorageSnapshotRecorder",
    "UsageExporter",
    "UsageIngestionGate",
    "calculate_cost",
    "export_events",
    "resolve_billing_entity",
    "time_weighted_average",
    "weight_for",
]
