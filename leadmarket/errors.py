"""Exception taxonomy for ingestion, purchases and ledgers."""
from typing import Optional


class LeadMarketError(Exception):
    """Base exception for all lead marketplace errors."""

    pass


class NotFoundError(LeadMarketError):
    """Requested record does not exist (or is not visible to the caller)."""

    pass


class RowValidationError(LeadMarketError):
    """A single CSV row failed schema or required-field validation."""

    def __init__(
        self,
        reason: str,
        message: str,
        field: Optional[str] = None,
        value: Optional[str] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.message = message
        self.field = field
        self.value = value


class DuplicateRowError(LeadMarketError):
    """A row's fingerprint already belongs to this batch or to the lead pool."""

    def __init__(self, reason: str, fingerprint: str, existing_lead_id: Optional[str] = None):
        super().__init__(f"{reason}: {fingerprint}")
        self.reason = reason
        self.fingerprint = fingerprint
        self.existing_lead_id = existing_lead_id


class IngestionFailure(LeadMarketError):
    """The batch file could not be read or stored; fatal to the batch."""

    pass


class ConflictError(LeadMarketError):
    """The lead changed state underneath the caller (already sold)."""

    pass


class LedgerInvariantViolation(LeadMarketError):
    """A ledger mutation was refused; ``reason`` is a stable machine code."""

    def __init__(self, reason: str, message: str):
        super().__init__(message)
        self.reason = reason
        self.message = message


class PaymentProviderError(LeadMarketError):
    """The payment provider rejected the request or returned an unusable intent."""

    pass


class PaymentProviderTimeout(PaymentProviderError):
    """The payment provider did not answer in time; the call is safe to retry."""

    pass


class PaymentVerificationError(LeadMarketError):
    """The payment intent has not succeeded or does not match the purchase."""

    pass
