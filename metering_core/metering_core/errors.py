"""Exception taxonomy for the metering engine.

Every error carries a stable ``code`` string so that the HTTP layer and
the CLI can report failures without inspecting message text.
"""

from __future__ import annotations


class MeteringError(Exception):
    """Base class for all metering engine errors."""

    code: str = "METERING_ERROR"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(MeteringError):
    """Input failed validation (negative units, bad period, unknown enum)."""

    code = "VALIDATION_ERROR"


class UnauthorizedError(MeteringError):
    """The authorization oracle denied the caller."""

    code = "UNAUTHORIZED"


class NotFoundError(MeteringError):
    """A referenced workspace, aggregation, invoice or alert does not exist."""

    code = "NOT_FOUND"


class PeriodLockedError(MeteringError):
    """The period has been invoiced; it accepts no recompute and no new usage."""

    code = "BILLING_PERIOD_LOCKED"

    def __init__(self, workspace_id: str, period: str) -> None:
        super().__init__(f"Billing period {period} for workspace {workspace_id} is locked")
        self.workspace_id = workspace_id
        self.period = period


class DuplicateInvoiceError(MeteringError):
    """An invoice already exists for the period, from any aggregation scope."""

    code = "DUPLICATE_INVOICE"

    def __init__(self, workspace_id: str, period: str, invoice_id: str | None = None) -> None:
        detail = f" (existing invoice {invoice_id})" if invoice_id else ""
        super().__init__(f"Invoice already generated for workspace {workspace_id} period {period}{detail}")
        self.workspace_id = workspace_id
        self.period = period
        self.invoice_id = invoice_id


class BillingSuspendedError(MeteringError):
    """Writes are blocked because the workspace's billing account is suspended."""

    code = "BILLING_SUSPENDED"

    def __init__(self, workspace_id: str) -> None:
        super().__init__(f"Billing account for workspace {workspace_id} is suspended")
        self.workspace_id = workspace_id


class StateTransitionError(MeteringError):
    """An invoice lifecycle transition is not allowed from the current status."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, invoice_id: str, current: str, target: str) -> None:
        super().__init__(f"Invoice {invoice_id} cannot move from '{current}' to '{target}'")
        self.invoice_id = invoice_id
        self.current = current
        self.target = target


class ConcurrencyConflictError(MeteringError):
    """Optimistic-concurrency retries were exhausted."""

    code = "CONCURRENCY_CONFLICT"


class InvoiceIntegrityError(MeteringError):
    """Invoice creation failed after the aggregation lock was taken.

    The enclosing transaction has been rolled back; the caller may retry.
    """

    code = "INVOICE_INTEGRITY_ERROR"
