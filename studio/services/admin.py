from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from studio.db.models import Direction, LedgerEntry, LedgerSource
from studio.db.session import store_errors
from studio.errors import ValidationError
from studio.services.ledger import LedgerStore
from studio.utils.logging import get_logger


logger = get_logger('admin')


class AdminService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def adjust_credits(
        self,
        account_id: str,
        amount: int,
        reason: str,
        admin_id: str | None = None,
        reference_id: str | None = None,
    ) -> LedgerEntry:
        """Manual balance correction; negative amounts debit and cannot overdraw."""
        if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
            raise ValidationError('adjustment amount must be a non-zero integer')
        reason = (reason or '').strip()
        if not reason:
            raise ValidationError('adjustment reason is required')

        direction = Direction.CREDIT if amount > 0 else Direction.DEBIT
        async with store_errors(self.session):
            entry = await LedgerStore(self.session).append(
                account_id,
                abs(amount),
                direction,
                LedgerSource.ADMIN_ADJUSTMENT,
                reference_id=reference_id,
                meta={'reason': reason[:500], 'admin_id': admin_id},
            )
            await self.session.commit()
        logger.info(
            'admin_credit_adjustment',
            account_id=account_id,
            amount=amount,
            admin_id=admin_id,
            balance_after=entry.balance_after,
        )
        return entry
