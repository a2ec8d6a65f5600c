from __future__ import annotations

from enum import Enum
from typing import Any, Dict


class DenialReason(str, Enum):
    DAILY_LIMIT_REACHED = 'DAILY_LIMIT_REACHED'
    NO_CREDITS_NO_FREE_GENERATIONS = 'NO_CREDITS_NO_FREE_GENERATIONS'


class BillingError(Exception):
    code = 'BILLING_ERROR'
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.lower())
        self.message = message or self.code.lower()

    def details(self) -> Dict[str, Any]:
        return {}


class ValidationError(BillingError):
    code = 'VALIDATION_ERROR'
    status_code = 400


class InsufficientCredits(BillingError):
    code = 'INSUFFICIENT_CREDITS'
    status_code = 402

    def __init__(self, balance: int, required: int) -> None:
        super().__init__(f'insufficient credits: balance={balance} required={required}')
        self.balance = balance
        self.required = required

    def details(self) -> Dict[str, Any]:
        return {'balance': self.balance, 'required': self.required}


class GenerationDenied(BillingError):
    status_code = 403

    def __init__(self, reason: DenialReason, **context: Any) -> None:
        super().__init__(reason.value.lower())
        self.reason = reason
        self.context = context

    @property
    def code(self) -> str:  # type: ignore[override]
        return self.reason.value

    def details(self) -> Dict[str, Any]:
        return dict(self.context)


class DuplicateLedgerEntry(BillingError):
    code = 'DUPLICATE_LEDGER_ENTRY'
    status_code = 409

    def __init__(self, source: str, reference_id: str | None) -> None:
        super().__init__(f'ledger entry exists for {source}:{reference_id}')
        self.source = source
        self.reference_id = reference_id


class StoreUnavailable(BillingError):
    code = 'STORE_UNAVAILABLE'
    status_code = 503


class RefundFailed(BillingError):
    code = 'REFUND_FAILED'
    status_code = 500


class GenerationFailed(BillingError):
    code = 'GENERATION_FAILED'
    status_code = 502

    def __init__(self, message: str, refunded: bool) -> None:
        super().__init__(message)
        self.refunded = refunded

    def details(self) -> Dict[str, Any]:
        return {'refunded': self.refunded}


class WebhookSignatureInvalid(BillingError):
    code = 'WEBHOOK_SIGNATURE_INVALID'
    status_code = 401
