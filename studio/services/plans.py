from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from studio.config import BillingConfig
from studio.db.models import Account, Direction, LedgerSource, Plan
from studio.errors import ValidationError
from studio.services.ledger import LedgerStore
from studio.utils.logging import get_logger
from studio.utils.time import as_utc, utcnow


logger = get_logger('plans')

# Historical order tag for the professional plan sold at a flat 2000.
LEGACY_PLAN_ALIASES = {'rs2000': Plan.PROFESSIONAL}


def parse_plan(value: str | None) -> Plan:
    key = (value or '').strip().lower()
    if key in LEGACY_PLAN_ALIASES:
        return LEGACY_PLAN_ALIASES[key]
    try:
        return Plan(key)
    except ValueError:
        raise ValidationError(f'unknown plan: {value!r}') from None


def effective_plan(account: Account, now: datetime) -> Plan:
    """Stored plan unless its expiry has passed, in which case free."""
    if account.plan_expiry is not None and as_utc(now) > as_utc(account.plan_expiry):
        return Plan.FREE
    return account.plan


@dataclass
class Subscription:
    plan: Plan
    expiry: datetime
    credits_charged: int
    balance: int


class PlanService:
    def __init__(
        self,
        session: AsyncSession,
        config: BillingConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session = session
        self.config = config
        self.clock = clock

    def apply_plan_purchase(self, account: Account, plan: Plan, now: datetime | None = None) -> datetime:
        now = now or self.clock()
        expiry = as_utc(now) + timedelta(days=self.config.plan_duration_days)
        account.plan = plan
        account.plan_expiry = expiry
        account.updated_at = now
        logger.info('plan_applied', account_id=account.id, plan=plan.value, expiry=expiry.isoformat())
        return expiry

    async def subscribe_with_credits(self, account_id: str, plan_name: str) -> Subscription:
        plan = parse_plan(plan_name)
        if plan == Plan.FREE:
            raise ValidationError('free plan cannot be purchased')
        price = self.config.plan_price_credits.get(plan.value)
        if price is None:
            raise ValidationError(f'plan {plan.value} has no credit price')

        ledger = LedgerStore(self.session)
        if price > 0:
            await ledger.append(
                account_id,
                int(price),
                Direction.DEBIT,
                LedgerSource.PLAN_SUBSCRIPTION,
                meta={'plan': plan.value},
            )
        account = await ledger.lock_account(account_id)
        expiry = self.apply_plan_purchase(account, plan)
        await self.session.commit()
        return Subscription(plan=plan, expiry=expiry, credits_charged=int(price), balance=account.balance)
