"""
Credit metering exceptions.

Every error carries a stable ``code`` plus structured ``details`` so the API
layer can render it without knowing the concrete class.
"""

from typing import Any, Dict, Optional


class CreditError(Exception):
    """Base exception for metering and ledger failures."""

    status_code = 400

    def __init__(self, message: str, code: str = "CREDIT_ERROR", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


class InsufficientBalance(CreditError):
    """
    Raised when a charge would take the balance below zero.

    Attributes:
        required: Credits the operation needs
        available: Credits currently on the account
    """

    status_code = 402

    def __init__(self, required: int, available: int, message: str = "Insufficient credits for this operation"):
        super().__init__(
            message=message,
            code="INSUFFICIENT_BALANCE",
            details={
                "required": required,
                "available": available,
                "shortfall": max(0, required - available),
            },
        )
        self.required = required
        self.available = available


class AccountNotFound(CreditError):
    """The credit account does not exist; indicates a broken session invariant."""

    status_code = 404

    def __init__(self, account_id: str):
        super().__init__(
            message="Credit account not found",
            code="ACCOUNT_NOT_FOUND",
            details={"account_id": account_id},
        )
        self.account_id = account_id


class ChargeInProgress(CreditError):
    """Another charge for the same scope is still in flight."""

    status_code = 409

    def __init__(self, scope_key: str):
        super().__init__(
            message="A charge for this session is already in progress. Try again shortly.",
            code="CHARGE_IN_PROGRESS",
            details={"scope": scope_key},
        )
        self.scope_key = scope_key


class TransientStoreFailure(CreditError):
    """The ledger store failed transiently; safe to retry with the same idempotency key."""

    status_code = 503

    def __init__(self, idempotency_key: Optional[str] = None, attempts: int = 0):
        super().__init__(
            message="Credit ledger is temporarily unavailable. Try again.",
            code="TRANSIENT_STORE_FAILURE",
            details={"idempotency_key": idempotency_key, "attempts": attempts},
        )


class UpstreamProviderFailure(CreditError):
    """The paid AI/data provider call itself failed."""

    status_code = 502

    def __init__(self, message: str = "Enrichment provider failed. Try again shortly.", reason: Optional[str] = None):
        super().__init__(
            message=message,
            code="UPSTREAM_PROVIDER_FAILURE",
            details={"reason": reason} if reason else {},
        )


class DownstreamWorkFailure(CreditError):
    """Paid work failed after the charge committed; the charge was refunded."""

    status_code = 502

    def __init__(self, refund_entry_id: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(
            message="Could not complete the paid operation. Credits were refunded.",
            code="DOWNSTREAM_WORK_FAILURE",
            details={"refund_entry_id": refund_entry_id, "reason": reason},
        )


class InvalidLedgerRequest(CreditError):
    """Malformed ledger request (bad sign, empty key, unknown action)."""

    status_code = 422

    def __init__(self, message: str):
        super().__init__(message=message, code="INVALID_LEDGER_REQUEST")


class LedgerEntryNotFound(CreditError):
    status_code = 404

    def __init__(self, entry_id: str):
        super().__init__(
            message="Ledger entry not found",
            code="LEDGER_ENTRY_NOT_FOUND",
            details={"entry_id": entry_id},
        )


class RefundNotAllowed(CreditError):
    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code="REFUND_NOT_ALLOWED", details=details)


class EnrichmentRunNotFound(CreditError):
    status_code = 404

    def __init__(self, run_id: str):
        super().__init__(
            message="Enrichment run not found",
            code="ENRICHMENT_RUN_NOT_FOUND",
            details={"run_id": run_id},
        )
