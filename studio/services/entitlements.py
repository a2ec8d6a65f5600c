from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from studio.config import BillingConfig
from studio.db.models import COUNTED_GENERATION_STATUSES, Generation, Plan
from studio.errors import DenialReason, ValidationError
from studio.services.ledger import LedgerStore
from studio.services.plans import effective_plan
from studio.utils.logging import get_logger
from studio.utils.time import start_of_day, utcnow


logger = get_logger('entitlements')


def normalize_generation_type(value: str | None) -> str:
    return (value or '').strip().lower().replace('-', '_')


@dataclass
class Entitlement:
    allowed: bool
    is_free_generation: bool
    credit_cost: int
    plan: Plan
    daily_limit: int
    generations_today: int
    reason: DenialReason | None = None
    first_generation: bool = False
    free_generations_used: int = 0

    @property
    def watermark(self) -> bool:
        # Free daily generations are delivered at reduced quality with a watermark.
        return self.is_free_generation

    def as_dict(self) -> dict[str, Any]:
        return {
            'allowed': self.allowed,
            'is_free_generation': self.is_free_generation,
            'credit_cost': self.credit_cost,
            'reason': self.reason.value if self.reason else None,
            'plan': self.plan.value,
            'daily_limit': self.daily_limit,
            'generations_today': self.generations_today,
            'first_generation': self.first_generation,
            'free_generations_used': self.free_generations_used,
            'watermark': self.watermark,
        }


class EntitlementResolver:
    """Decides whether a generation may run and what it costs.

    Order of checks: plan daily limit, first-ever generation, fixed
    per-type price, then the free-plan daily allowance when the balance
    cannot cover the price. The day boundary is local midnight in the
    configured timezone.
    """

    def __init__(
        self,
        session: AsyncSession,
        config: BillingConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.config = config
        self.clock = clock

    async def _count_generations(self, account_id: str, since: datetime | None = None, free_only: bool = False) -> int:
        stmt = (
            select(func.count(Generation.id))
            .where(Generation.account_id == account_id)
            .where(Generation.status.in_(COUNTED_GENERATION_STATUSES))
        )
        if since is not None:
            stmt = stmt.where(Generation.created_at >= since)
        if free_only:
            stmt = stmt.where(Generation.is_free_generation.is_(True))
        result = await self.session.execute(stmt)
        return int(result.scalar_one() or 0)

    async def resolve(
        self,
        account_id: str,
        generation_type: str,
        resolution: str | None = None,
        *,
        lock: bool = False,
    ) -> Entitlement:
        """Decision against the latest committed state.

        With ``lock`` the account row stays locked until the caller ends the
        transaction, so the caller can record the attempt before any other
        decision for the same account is made.
        """
        type_key = normalize_generation_type(generation_type)
        cost = self.config.cost_for(type_key)
        if cost is None:
            raise ValidationError(f'unknown generation type: {generation_type!r}')

        account = await LedgerStore(self.session).get_account(account_id, lock=lock)
        if not account:
            raise ValidationError(f'unknown account: {account_id}')

        now = self.clock()
        plan = effective_plan(account, now)
        daily_limit = self.config.daily_limit(plan.value)
        day_start = start_of_day(now, self.config.timezone)

        generations_today = await self._count_generations(account.id, since=day_start)
        if generations_today >= daily_limit:
            logger.info(
                'entitlement_denied',
                account_id=account.id,
                reason=DenialReason.DAILY_LIMIT_REACHED.value,
                plan=plan.value,
                limit=daily_limit,
            )
            return Entitlement(
                allowed=False,
                is_free_generation=False,
                credit_cost=0,
                plan=plan,
                daily_limit=daily_limit,
                generations_today=generations_today,
                reason=DenialReason.DAILY_LIMIT_REACHED,
            )

        lifetime = await self._count_generations(account.id)
        if lifetime == 0:
            return Entitlement(
                allowed=True,
                is_free_generation=False,
                credit_cost=0,
                plan=plan,
                daily_limit=daily_limit,
                generations_today=generations_today,
                first_generation=True,
            )

        if plan == Plan.FREE and account.balance < cost:
            free_used = await self._count_generations(account.id, since=day_start, free_only=True)
            if free_used < self.config.free_daily_generation_limit:
                return Entitlement(
                    allowed=True,
                    is_free_generation=True,
                    credit_cost=0,
                    plan=plan,
                    daily_limit=daily_limit,
                    generations_today=generations_today,
                    free_generations_used=free_used,
                )
            logger.info(
                'entitlement_denied',
                account_id=account.id,
                reason=DenialReason.NO_CREDITS_NO_FREE_GENERATIONS.value,
                balance=account.balance,
                cost=cost,
            )
            return Entitlement(
                allowed=False,
                is_free_generation=False,
                credit_cost=0,
                plan=plan,
                daily_limit=daily_limit,
                generations_today=generations_today,
                reason=DenialReason.NO_CREDITS_NO_FREE_GENERATIONS,
                free_generations_used=free_used,
            )

        return Entitlement(
            allowed=True,
            is_free_generation=False,
            credit_cost=cost,
            plan=plan,
            daily_limit=daily_limit,
            generations_today=generations_today,
        )
