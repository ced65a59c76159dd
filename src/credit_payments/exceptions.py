"""
Exceptions raised by gateways and stores.

Use cases translate these into result objects carrying a stable error code;
they are never surfaced to HTTP callers as tracebacks.
"""

from __future__ import annotations

from typing import Any, Optional


class CreditPaymentsError(Exception):
    """Base class for payment and ledger errors."""

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class GatewayNotConfiguredError(CreditPaymentsError):
    """Raised when a gateway is used without its credentials."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            f"{provider} payments not configured",
            code="PROVIDER_NOT_CONFIGURED",
            details={"provider": provider},
        )


class GatewayError(CreditPaymentsError):
    """A provider API call failed (HTTP error, unexpected payload)."""

    def __init__(
        self, message: str, provider: str, status_code: Optional[int] = None
    ) -> None:
        super().__init__(
            message,
            code="GATEWAY_ERROR",
            details={"provider": provider, "status_code": status_code},
        )
        self.status_code = status_code


class CaptureNotSupportedError(CreditPaymentsError):
    def __init__(self, provider: str) -> None:
        super().__init__(
            "This payment provider does not require capture",
            code="CAPTURE_FAILED",
            details={"provider": provider},
        )


class StoreError(CreditPaymentsError):
    """Storage layer failure."""


class DuplicateTransactionError(StoreError):
    """
    The (payment_provider, payment_id, type) uniqueness constraint rejected a
    write. Callers treat this as "already handled".
    """

    def __init__(self, payment_id: str, transaction_type: str) -> None:
        super().__init__(
            f"Transaction {transaction_type} already exists for payment {payment_id}",
            code="DUPLICATE_TRANSACTION",
            details={"payment_id": payment_id, "type": transaction_type},
        )
        self.payment_id = payment_id
        self.transaction_type = transaction_type
