"""
LabelBay Exception Hierarchy

Structured exception classes for rate aggregation, the ledger and the
purchase flow. All exceptions include code, message, and details for
audit trail and debugging.

Exception Hierarchy:
    LabelBayError
    ├── ValidationError
    ├── NotFoundError
    ├── ProviderError
    │   ├── RateAggregationError
    │   └── PaymentVerificationError
    ├── LedgerError
    │   ├── InsufficientFunds
    │   ├── InvalidAmount
    │   └── TransientStoreError
    └── PurchaseError
        ├── QuoteExpiredError
        ├── PurchaseFailedError
        └── ConsistencyError
"""
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class LabelBayError(Exception):
    """
    Base exception for all LabelBay custom errors.

    Attributes:
        message: Human-readable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
    """

    default_code: str = "LABELBAY_ERROR"
    default_severity: str = "P2"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# INPUT ERRORS
# =============================================================================

class ValidationError(LabelBayError):
    """Request or record failed validation. Nothing was written."""
    default_code = "VALIDATION_FAILED"
    default_severity = "P3"

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(message, details=details, **kwargs)


class NotFoundError(LabelBayError):
    """Record missing, deleted, or owned by someone else."""
    default_code = "NOT_FOUND"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        resource: Optional[str] = None,
        resource_id: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "resource": resource,
            "resource_id": resource_id,
        })
        super().__init__(message, details=details, **kwargs)


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(LabelBayError):
    """An external provider failed or returned something unusable."""
    default_code = "PROVIDER_ERROR"
    default_severity = "P2"

    def __init__(self, message: str, provider: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if provider:
            details["provider"] = provider
        super().__init__(message, details=details, **kwargs)


class RateAggregationError(ProviderError):
    """No provider produced a usable quote."""
    default_code = "NO_RATES_FOUND"

    def __init__(self, message: str, provider_errors: Optional[List[Dict[str, str]]] = None, **kwargs):
        details = kwargs.pop("details", {})
        details["provider_errors"] = provider_errors or []
        super().__init__(message, details=details, **kwargs)


class PaymentVerificationError(ProviderError):
    """External payment could not be verified as captured for this user."""
    default_code = "PAYMENT_VERIFICATION_FAILED"
    default_severity = "P1"


# =============================================================================
# LEDGER ERRORS
# =============================================================================

class LedgerError(LabelBayError):
    """Base exception for balance/transaction errors."""
    default_code = "LEDGER_ERROR"
    default_severity = "P1"


class InsufficientFunds(LedgerError):
    """Balance is lower than the requested debit."""
    default_code = "INSUFFICIENT_FUNDS"
    default_severity = "P3"

    def __init__(
        self,
        message: str,
        balance: Optional[Decimal] = None,
        requested: Optional[Decimal] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "balance": str(balance) if balance is not None else None,
            "requested": str(requested) if requested is not None else None,
        })
        super().__init__(message, details=details, **kwargs)


class InvalidAmount(LedgerError):
    """Amount is zero, negative, or not a valid money value."""
    default_code = "INVALID_AMOUNT"
    default_severity = "P3"


class TransientStoreError(LedgerError):
    """Storage kept failing after bounded retries. Balance is unchanged."""
    default_code = "STORE_UNAVAILABLE"
    default_severity = "P1"


# =============================================================================
# PURCHASE ERRORS
# =============================================================================

class PurchaseError(LabelBayError):
    """Base exception for the label purchase flow."""
    default_code = "PURCHASE_ERROR"
    default_severity = "P1"


class QuoteExpiredError(PurchaseError):
    """The selected rate quote is past its validity window."""
    default_code = "QUOTE_EXPIRED"
    default_severity = "P3"


class PurchaseFailedError(PurchaseError):
    """Purchase did not complete. Any debit has been refunded."""
    default_code = "PURCHASE_FAILED"

    def __init__(
        self,
        message: str,
        shipment_id: Optional[str] = None,
        refunded: bool = False,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "shipment_id": shipment_id,
            "refunded": refunded,
        })
        super().__init__(message, details=details, **kwargs)


class ConsistencyError(PurchaseError):
    """Balance was debited and could not be restored. Operator action required."""
    default_code = "CONSISTENCY_ERROR"
    default_severity = "P0"

    def __init__(
        self,
        message: str,
        user_id: Optional[str] = None,
        reference: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "user_id": user_id,
            "reference": reference,
        })
        super().__init__(message, details=details, **kwargs)
