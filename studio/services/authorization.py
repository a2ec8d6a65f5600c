from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from studio.db.models import Account, Direction, LedgerSource
from studio.db.session import store_errors
from studio.errors import InsufficientCredits, ValidationError
from studio.services.ledger import LedgerStore
from studio.utils.logging import get_logger


logger = get_logger('authorization')


def _require_cost(value: int, *, allow_zero: bool) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'credit cost must be an integer, got {value!r}')
    if value < 0 or (value == 0 and not allow_zero):
        raise ValidationError(f'credit cost out of range: {value}')
    return value


class CreditAuthorizationEngine:
    """Charges and compensating refunds for a single generation attempt.

    Both operations commit their own transaction so that a charge is durable
    before the caller talks to the image provider.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.ledger = LedgerStore(session)

    async def authorize_and_charge(
        self,
        account_id: str,
        credit_cost: int,
        source: LedgerSource = LedgerSource.IMAGE_GENERATION,
        reference_id: str | None = None,
        meta: dict | None = None,
    ) -> Account:
        credit_cost = _require_cost(credit_cost, allow_zero=True)
        async with store_errors(self.session):
            account = await self.ledger.lock_account(account_id)
            if credit_cost == 0:
                await self.session.commit()
                return account

            try:
                await self.ledger.append(
                    account_id,
                    credit_cost,
                    Direction.DEBIT,
                    source,
                    reference_id=reference_id,
                    meta=meta,
                )
            except InsufficientCredits as exc:
                logger.info('charge_rejected', account_id=account_id, balance=exc.balance, required=credit_cost)
                raise
            await self.session.commit()
        return account

    async def refund(
        self,
        account_id: str,
        credit_cost: int,
        reason: LedgerSource = LedgerSource.REFUND_FAILED_GENERATION,
        reference_id: str | None = None,
        meta: dict | None = None,
    ) -> Account:
        credit_cost = _require_cost(credit_cost, allow_zero=False)
        async with store_errors(self.session):
            await self.ledger.append(
                account_id,
                credit_cost,
                Direction.CREDIT,
                reason,
                reference_id=reference_id,
                meta=meta,
            )
            account = await self.session.get(Account, account_id)
            await self.session.commit()
        logger.info('refund_applied', account_id=account_id, amount=credit_cost, reference_id=reference_id)
        return account
