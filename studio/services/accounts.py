from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from studio.config import BillingConfig
from studio.db.models import Account, Direction, LedgerSource, Plan
from studio.errors import DuplicateLedgerEntry, ValidationError
from studio.services.ledger import LedgerStore
from studio.utils.time import utcnow


class AccountsService:
    def __init__(self, session: AsyncSession, config: BillingConfig) -> None:
        self.session = session
        self.config = config

    async def get_account(self, account_id: str) -> Optional[Account]:
        result = await self.session.execute(
            select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require_account(self, account_id: str) -> Account:
        account = await self.get_account(account_id)
        if not account:
            raise ValidationError(f'unknown account: {account_id}')
        return account

    async def create_account(self, account_id: str | None = None, email: str | None = None) -> Account:
        now = utcnow()
        account = Account(
            email=email,
            balance=0,
            plan=Plan.FREE,
            plan_expiry=None,
            created_at=now,
            updated_at=now,
        )
        if account_id:
            account.id = account_id
        self.session.add(account)
        await self.session.flush()
        await self.apply_signup_bonus(account)
        return account

    async def apply_signup_bonus(self, account: Account) -> bool:
        bonus = int(self.config.new_account_signup_bonus)
        if bonus <= 0:
            return False
        ledger = LedgerStore(self.session)
        key = f'signup:{account.id}'
        if await ledger.find_by_reference(LedgerSource.INITIAL_SIGNUP, key):
            return False
        try:
            await ledger.append(
                account.id,
                bonus,
                Direction.CREDIT,
                LedgerSource.INITIAL_SIGNUP,
                reference_id=key,
                meta={'bonus': bonus},
            )
        except DuplicateLedgerEntry:
            return False
        return True
