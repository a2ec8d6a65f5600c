from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from studio.db.models import Account, Direction, Generation, GenerationStatus, PendingRefund
from studio.db.session import store_errors
from studio.errors import DuplicateLedgerEntry, StoreUnavailable, ValidationError
from studio.services.ledger import LedgerStore
from studio.utils.logging import get_logger
from studio.utils.time import utcnow


logger = get_logger('reconciliation')


@dataclass
class ReplaySummary:
    replayed: int = 0
    already_applied: int = 0
    failed: int = 0
    resolved_ids: List[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            'replayed': self.replayed,
            'already_applied': self.already_applied,
            'failed': self.failed,
            'resolved_ids': list(self.resolved_ids),
        }


@dataclass
class AccountAudit:
    account_id: str
    balance: int
    ledger_sum: int
    entries: int
    chain_consistent: bool
    first_break_entry_id: int | None = None

    @property
    def ok(self) -> bool:
        return self.chain_consistent and self.balance == self.ledger_sum

    def as_dict(self) -> dict:
        return {
            'account_id': self.account_id,
            'balance': self.balance,
            'ledger_sum': self.ledger_sum,
            'entries': self.entries,
            'chain_consistent': self.chain_consistent,
            'first_break_entry_id': self.first_break_entry_id,
            'ok': self.ok,
        }


class ReconciliationService:
    """Operator tooling: replay refunds that could not be written, audit balances."""

    def __init__(self, session: AsyncSession, clock: Callable[[], datetime] = utcnow) -> None:
        self.session = session
        self.clock = clock

    async def pending_refunds(self, limit: int | None = None) -> List[PendingRefund]:
        stmt = (
            select(PendingRefund)
            .where(PendingRefund.resolved_at.is_(None))
            .order_by(PendingRefund.created_at.asc(), PendingRefund.id.asc())
        )
        if limit:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def replay_pending_refunds(self, limit: int = 100) -> ReplaySummary:
        summary = ReplaySummary()
        async with store_errors(self.session):
            rows = await self.pending_refunds(limit)
        # Plain tuples: a duplicate rolls the session back and expires the rows.
        pending = [(row.id, row.account_id, row.generation_id, row.amount, row.reason) for row in rows]

        for refund_id, account_id, generation_id, amount, reason in pending:
            reference = generation_id or f'pending_refund:{refund_id}'
            try:
                async with store_errors(self.session):
                    try:
                        await LedgerStore(self.session).append(
                            account_id,
                            amount,
                            Direction.CREDIT,
                            reason,
                            reference_id=reference,
                            meta={'pending_refund_id': refund_id, 'replayed': True},
                        )
                        summary.replayed += 1
                    except DuplicateLedgerEntry:
                        summary.already_applied += 1
                    await self._resolve(refund_id, generation_id)
                    await self.session.commit()
            except (StoreUnavailable, ValidationError) as exc:
                summary.failed += 1
                logger.error('refund_replay_failed', pending_refund_id=refund_id, error=str(exc))
                continue
            summary.resolved_ids.append(refund_id)

        logger.info('refund_replay_finished', **summary.as_dict())
        return summary

    async def _resolve(self, refund_id: int, generation_id: str | None) -> None:
        now = self.clock()
        row = await self.session.get(PendingRefund, refund_id)
        row.resolved_at = now
        row.attempts = (row.attempts or 0) + 1
        if generation_id:
            await self.session.execute(
                update(Generation)
                .where(Generation.id == generation_id)
                .where(Generation.status == GenerationStatus.REFUND_FAILED)
                .values(status=GenerationStatus.REFUNDED, updated_at=now)
            )

    async def audit_account(self, account_id: str) -> AccountAudit:
        ledger = LedgerStore(self.session)
        account = await ledger.get_account(account_id)
        if not account:
            raise ValidationError(f'unknown account: {account_id}')

        entries = await ledger.entries_ascending(account_id)
        running = 0
        broken_at = None
        for entry in entries:
            running += entry.signed_amount
            if broken_at is None and entry.balance_after != running:
                broken_at = entry.id

        audit = AccountAudit(
            account_id=account_id,
            balance=account.balance,
            ledger_sum=running,
            entries=len(entries),
            chain_consistent=broken_at is None,
            first_break_entry_id=broken_at,
        )
        if not audit.ok:
            logger.error('ledger_audit_mismatch', **audit.as_dict())
        return audit

    async def audit_all(self) -> List[AccountAudit]:
        result = await self.session.execute(select(Account.id).order_by(Account.created_at.asc()))
        return [await self.audit_account(account_id) for account_id in result.scalars().all()]
