"""
Credit Ledger Exceptions

Every error carries an error_code, an HTTP status for the API boundary,
and a to_dict() used as the HTTPException detail.
"""
from typing import Optional

from .config import ERROR_CODES


class CreditLedgerError(Exception):
    """Base class for credit ledger errors."""

    error_code = "CREDIT_LEDGER_ERROR"
    http_status = 500

    def __init__(self, message: Optional[str] = None, details: Optional[str] = None):
        self.message = message or ERROR_CODES.get(self.error_code, self.error_code)
        self.details = details
        text = self.message
        if details:
            text = f"{text} - {details}"
        super().__init__(text)

    def to_dict(self):
        """Convert to API response format."""
        payload = {
            "error_code": self.error_code,
            "message": self.message
        }
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidPlan(CreditLedgerError):
    error_code = "INVALID_PLAN"
    http_status = 400

    def __init__(self, plan_id: Optional[str] = None):
        self.plan_id = plan_id
        super().__init__(details=f"plan_id={plan_id}" if plan_id else None)


class AccountNotFound(CreditLedgerError):
    error_code = "ACCOUNT_NOT_FOUND"
    http_status = 404

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__()


class InsufficientCredits(CreditLedgerError):
    """User-correctable: the caller should top up. Not a system error."""

    error_code = "INSUFFICIENT_CREDITS"
    http_status = 403

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(details=f"required={required}, available={available}")

    def to_dict(self):
        return {
            "error_code": self.error_code,
            "message": self.message,
            "required": self.required,
            "available": self.available
        }


class SignatureInvalid(CreditLedgerError):
    """Never carries detail beyond a generic rejection."""

    error_code = "SIGNATURE_INVALID"
    http_status = 400


class DuplicateConfirmation(CreditLedgerError):
    """Informational: the order was already credited. Callers treat it as success."""

    error_code = "DUPLICATE_CONFIRMATION"
    http_status = 200


class ProviderUnavailable(CreditLedgerError):
    """Transient payment provider failure; safe for the caller to retry."""

    error_code = "PROVIDER_UNAVAILABLE"
    http_status = 503


class OrderNotFound(CreditLedgerError):
    error_code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(self, provider_order_id: Optional[str] = None):
        self.provider_order_id = provider_order_id
        super().__init__()


class OrderNotPayable(CreditLedgerError):
    """The order reached a terminal state other than paid."""

    error_code = "ORDER_NOT_PAYABLE"
    http_status = 409

    def __init__(self, provider_order_id: str, status: str):
        self.provider_order_id = provider_order_id
        self.status = status
        super().__init__(details=f"status={status}")


class AlreadyRecorded(CreditLedgerError):
    error_code = "ALREADY_RECORDED"
    http_status = 200

    def __init__(self, provider_event_id: str):
        self.provider_event_id = provider_event_id
        super().__init__(details=f"event_id={provider_event_id}")


class LedgerWriteError(CreditLedgerError):
    """Storage failed mid-mutation; the balance change was not kept."""

    error_code = "LEDGER_WRITE_FAILED"
    http_status = 500


class UnknownFeature(CreditLedgerError):
    error_code = "UNKNOWN_FEATURE"
    http_status = 404

    def __init__(self, feature: str):
        self.feature = feature
        super().__init__(details=f"feature={feature}")


class FeatureExecutionError(CreditLedgerError):
    error_code = "FEATURE_FAILED"
    http_status = 502

    def __init__(self, feature: str, details: Optional[str] = None, refunded: bool = True):
        self.feature = feature
        self.refunded = refunded
        message = None if refunded else "Feature execution failed. Credit refund could not be applied."
        super().__init__(message=message, details=details)

    def to_dict(self):
        payload = super().to_dict()
        payload["feature"] = self.feature
        payload["credits_refunded"] = self.refunded
        return payload
