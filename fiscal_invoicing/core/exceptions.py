"""
Error taxonomy for the fiscal invoicing subsystem.

Each class maps to one failure family and is translated to an HTTP
response in main.py. A business rejection from the authority is not an
exception: it is persisted on the invoice and returned as an outcome.
"""

from typing import Any, Dict, List, Optional


class FiscalError(Exception):
    """Base error carrying a machine-readable code and optional details."""

    error_code = "FISCAL_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)


class UnknownCodeError(FiscalError, ValueError):
    """A code or label has no entry in the authority code tables."""

    error_code = "UNKNOWN_CODE"


class InvoiceValidationError(FiscalError):
    """The draft cannot be submitted as it stands. No external call was made."""

    error_code = "VALIDATION_FAILED"

    def __init__(self, errors: List[str], error_code: Optional[str] = None):
        self.errors = list(errors)
        super().__init__(
            "; ".join(self.errors) or "Invalid invoice",
            error_code=error_code,
            details={"errors": self.errors},
        )


class TaxProfileResolutionError(FiscalError):
    """The counterparty's tax condition could not be determined."""

    error_code = "RESOLUTION_FAILED"


class AuthorityTransportError(FiscalError):
    """The authority could not be reached or did not answer in time."""

    error_code = "AUTHORITY_UNREACHABLE"


class AuthorityProtocolError(FiscalError):
    """The authority answered with something that is not a valid response."""

    error_code = "AUTHORITY_PROTOCOL_ERROR"


class InvoiceNotFoundError(FiscalError):
    error_code = "INVOICE_NOT_FOUND"


class IllegalTransitionError(FiscalError):
    """Requested state change is not in the transition table."""

    error_code = "ILLEGAL_TRANSITION"

    def __init__(self, current_status: str, new_status: str, allowed: List[str]):
        self.current_status = current_status
        self.new_status = new_status
        super().__init__(
            f"Cannot transition from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "requested_status": new_status,
                "allowed_transitions": allowed,
            },
        )


class InvariantViolationError(FiscalError):
    """Request would break a balance or lifecycle invariant."""

    error_code = "INVARIANT_VIOLATION"


class ConcurrentModificationError(FiscalError):
    """Another process changed the invoice between read and write."""

    error_code = "CONCURRENT_MODIFICATION"


class SubmissionInProgressError(ConcurrentModificationError):
    """Another worker is waiting on the authority for this invoice."""

    error_code = "SUBMISSION_IN_PROGRESS"
