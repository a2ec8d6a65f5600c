from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from studio.db.models import Account, Direction, LedgerEntry, LedgerSource
from studio.errors import DuplicateLedgerEntry, InsufficientCredits, ValidationError
from studio.utils.logging import get_logger
from studio.utils.time import utcnow


logger = get_logger('ledger')


@dataclass
class LedgerPage:
    entries: List[LedgerEntry]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.page_size else 0


class LedgerStore:
    """Append-only ledger; the only writer of ``Account.balance``.

    Callers own the transaction: ``append`` flushes inside the caller's
    session and the caller commits. A duplicate ``(source, reference_id)``
    or a debit the balance cannot cover rolls the whole session back before
    ``DuplicateLedgerEntry`` or ``InsufficientCredits`` is raised.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_account(self, account_id: str, *, lock: bool = False) -> Optional[Account]:
        stmt = select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def lock_account(self, account_id: str) -> Account:
        account = await self.get_account(account_id, lock=True)
        if not account:
            raise ValidationError(f'unknown account: {account_id}')
        return account

    async def find_by_reference(self, source: LedgerSource, reference_id: str) -> Optional[LedgerEntry]:
        result = await self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.source == source)
            .where(LedgerEntry.reference_id == reference_id)
        )
        return result.scalar_one_or_none()

    async def append(
        self,
        account_id: str,
        amount: int,
        direction: Direction,
        source: LedgerSource,
        reference_id: str | None = None,
        meta: dict | None = None,
    ) -> LedgerEntry:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f'ledger amount must be a positive integer, got {amount!r}')

        account = await self.lock_account(account_id)
        if reference_id is not None and await self.find_by_reference(source, reference_id):
            raise DuplicateLedgerEntry(source.value, reference_id)

        signed = amount if direction == Direction.CREDIT else -amount
        # Conditional in-place update: writers queue on the row and each one
        # applies its delta to the balance left by the previous commit.
        result = await self.session.execute(
            update(Account)
            .where(Account.id == account.id)
            .where(Account.balance + signed >= 0)
            .values(balance=Account.balance + signed)
            .returning(Account.balance)
            .execution_options(synchronize_session=False)
        )
        balance_after = result.scalar_one_or_none()
        if balance_after is None:
            current = await self.session.scalar(select(Account.balance).where(Account.id == account.id))
            await self.session.rollback()
            raise InsufficientCredits(int(current or 0), amount)
        set_committed_value(account, 'balance', balance_after)

        now = utcnow()
        entry = LedgerEntry(
            account_id=account.id,
            amount=amount,
            direction=direction,
            source=source,
            reference_id=reference_id,
            balance_after=balance_after,
            meta=meta or {},
            created_at=now,
        )
        account.updated_at = now
        self.session.add(entry)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info('ledger_duplicate_reference', source=source.value, reference_id=reference_id)
            raise DuplicateLedgerEntry(source.value, reference_id)

        logger.info(
            'ledger_append',
            account_id=account.id,
            direction=direction.value,
            source=source.value,
            amount=amount,
            balance_after=balance_after,
            reference_id=reference_id,
        )
        return entry

    async def history(
        self,
        account_id: str,
        page: int = 1,
        page_size: int = 20,
        direction: Direction | None = None,
    ) -> LedgerPage:
        page = max(1, int(page))
        page_size = max(1, min(int(page_size), 200))

        filters = [LedgerEntry.account_id == account_id]
        if direction is not None:
            filters.append(LedgerEntry.direction == direction)

        total = await self.session.execute(select(func.count(LedgerEntry.id)).where(*filters))
        rows = await self.session.execute(
            select(LedgerEntry)
            .where(*filters)
            .order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return LedgerPage(
            entries=list(rows.scalars().all()),
            total=int(total.scalar_one() or 0),
            page=page,
            page_size=page_size,
        )

    async def ledger_sum(self, account_id: str) -> int:
        signed = case((LedgerEntry.direction == Direction.CREDIT, LedgerEntry.amount), else_=-LedgerEntry.amount)
        result = await self.session.execute(
            select(func.coalesce(func.sum(signed), 0)).where(LedgerEntry.account_id == account_id)
        )
        return int(result.scalar_one() or 0)

    async def entries_ascending(self, account_id: str) -> List[LedgerEntry]:
        result = await self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.created_at.asc(), LedgerEntry.id.asc())
        )
        return list(result.scalars().all())
