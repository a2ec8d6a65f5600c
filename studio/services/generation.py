from __future__ import annotations

import asyncio
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio.config import BillingConfig
from studio.db.models import Generation, GenerationStatus, LedgerSource, PendingRefund
from studio.db.session import store_errors
from studio.errors import (
    DuplicateLedgerEntry,
    GenerationDenied,
    GenerationFailed,
    InsufficientCredits,
    RefundFailed,
    StoreUnavailable,
)
from studio.services.authorization import CreditAuthorizationEngine
from studio.services.entitlements import Entitlement, EntitlementResolver, normalize_generation_type
from studio.utils.logging import get_logger
from studio.utils.time import utcnow


logger = get_logger('generation')


class AccountLocks:
    """One ``asyncio.Lock`` per account id, dropped once nobody holds it.

    Serializes entitlement decisions inside this process; the account row
    lock does the same across processes on PostgreSQL.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def for_account(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock


entitlement_locks = AccountLocks()


@dataclass
class GenerationRequest:
    generation_type: str
    prompt: str
    resolution: Optional[str] = None
    negative_prompt: Optional[str] = None
    style: Optional[str] = None


class ImageGenerator(Protocol):
    async def generate(self, request: GenerationRequest, *, reduced_quality: bool = False) -> Dict[str, Any]:
        ...


@dataclass
class GenerationResult:
    generation_id: str
    status: GenerationStatus
    credit_cost: int
    is_free_generation: bool
    watermark: bool
    first_generation: bool
    output: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            'generation_id': self.generation_id,
            'status': self.status.value,
            'credit_cost': self.credit_cost,
            'is_free_generation': self.is_free_generation,
            'watermark': self.watermark,
            'first_generation': self.first_generation,
            'output': self.output,
        }


class GenerationService:
    """Runs one generation attempt through authorize, charge, generate, settle.

    A charged attempt whose provider call fails or times out is refunded
    with exactly the charged amount, keyed by the generation id. A refund
    that cannot be written is recorded in ``pending_refunds`` for the
    reconciliation job.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        generator: ImageGenerator,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.config = config
        self.generator = generator
        self.clock = clock

    async def generate(self, account_id: str, request: GenerationRequest) -> GenerationResult:
        request.generation_type = normalize_generation_type(request.generation_type)

        async with self.sessionmaker() as session:
            # The attempt is recorded before the next decision for this account
            # is made, so counts and the first-generation check see it.
            async with entitlement_locks.for_account(account_id):
                async with store_errors(session):
                    entitlement = await EntitlementResolver(session, self.config, self.clock).resolve(
                        account_id, request.generation_type, request.resolution, lock=True
                    )
                    generation = self._new_generation(account_id, request, entitlement)
                    session.add(generation)
                    await session.commit()
            generation_id = generation.id

            if not entitlement.allowed:
                raise GenerationDenied(
                    entitlement.reason,
                    plan=entitlement.plan.value,
                    daily_limit=entitlement.daily_limit,
                    generations_today=entitlement.generations_today,
                )

            cost = entitlement.credit_cost
            engine = CreditAuthorizationEngine(session)
            try:
                # Committed together with the debit.
                async with store_errors(session):
                    await session.execute(
                        update(Generation)
                        .where(Generation.id == generation_id)
                        .values(status=GenerationStatus.CHARGED, updated_at=self.clock())
                    )
                await engine.authorize_and_charge(
                    account_id,
                    cost,
                    LedgerSource.IMAGE_GENERATION,
                    reference_id=generation_id if cost > 0 else None,
                    meta={'generation_id': generation_id, 'generation_type': request.generation_type},
                )
            except InsufficientCredits:
                await self._set_status_quietly(generation_id, GenerationStatus.REJECTED, 'insufficient_credits')
                raise
            except StoreUnavailable:
                await self._set_status_quietly(generation_id, GenerationStatus.REJECTED, 'store_unavailable')
                raise

        logger.info(
            'generation_charged',
            account_id=account_id,
            generation_id=generation_id,
            cost=cost,
            free=entitlement.is_free_generation,
            first=entitlement.first_generation,
        )

        try:
            output = await asyncio.wait_for(
                self.generator.generate(request, reduced_quality=entitlement.is_free_generation),
                timeout=self.config.generation_timeout_seconds,
            )
        except (Exception, asyncio.CancelledError) as exc:
            reason = str(exc) or exc.__class__.__name__
            logger.warning('generation_provider_failed', generation_id=generation_id, error=reason)
            refunded = await self._compensate(account_id, generation_id, cost, reason)
            if isinstance(exc, asyncio.CancelledError):
                raise
            if not refunded:
                raise RefundFailed(f'generation {generation_id} failed and its refund is pending') from exc
            raise GenerationFailed(reason, refunded=cost > 0) from exc

        try:
            await self._set_status(generation_id, GenerationStatus.SETTLED, result=output)
        except StoreUnavailable:
            # Charge and output are both valid; the row stays "charged".
            logger.error('generation_settle_failed', generation_id=generation_id)

        return GenerationResult(
            generation_id=generation_id,
            status=GenerationStatus.SETTLED,
            credit_cost=cost,
            is_free_generation=entitlement.is_free_generation,
            watermark=entitlement.watermark,
            first_generation=entitlement.first_generation,
            output=output or {},
        )

    def _new_generation(self, account_id: str, request: GenerationRequest, entitlement: Entitlement) -> Generation:
        now = self.clock()
        return Generation(
            account_id=account_id,
            generation_type=request.generation_type,
            resolution=request.resolution,
            prompt=request.prompt,
            is_free_generation=entitlement.is_free_generation,
            has_watermark=entitlement.watermark,
            credit_cost=entitlement.credit_cost,
            status=GenerationStatus.PENDING if entitlement.allowed else GenerationStatus.REJECTED,
            error=entitlement.reason.value if entitlement.reason else None,
            result={},
            created_at=now,
            updated_at=now,
        )

    async def _set_status(
        self,
        generation_id: str,
        status: GenerationStatus,
        *,
        error: str | None = None,
        result: Dict[str, Any] | None = None,
    ) -> None:
        values: Dict[str, Any] = {'status': status, 'updated_at': self.clock()}
        if error is not None:
            values['error'] = error[:255]
        if result is not None:
            values['result'] = result
        async with self.sessionmaker() as session:
            async with store_errors(session):
                await session.execute(update(Generation).where(Generation.id == generation_id).values(**values))
                await session.commit()

    async def _compensate(self, account_id: str, generation_id: str, cost: int, reason: str) -> bool:
        if cost <= 0:
            await self._set_status_quietly(generation_id, GenerationStatus.REFUNDED, reason)
            return True

        try:
            async with self.sessionmaker() as session:
                await CreditAuthorizationEngine(session).refund(
                    account_id,
                    cost,
                    LedgerSource.REFUND_FAILED_GENERATION,
                    reference_id=generation_id,
                    meta={'generation_id': generation_id, 'error': reason[:255]},
                )
        except DuplicateLedgerEntry:
            logger.info('refund_already_applied', generation_id=generation_id)
        except Exception as exc:
            logger.critical(
                'refund_failed',
                account_id=account_id,
                generation_id=generation_id,
                amount=cost,
                error=str(exc),
            )
            await self._record_pending_refund(account_id, generation_id, cost, str(exc))
            await self._set_status_quietly(generation_id, GenerationStatus.REFUND_FAILED, reason)
            return False

        await self._set_status_quietly(generation_id, GenerationStatus.REFUNDED, reason)
        return True

    async def _set_status_quietly(self, generation_id: str, status: GenerationStatus, error: str) -> None:
        try:
            await self._set_status(generation_id, status, error=error)
        except StoreUnavailable:
            logger.error('generation_status_update_failed', generation_id=generation_id, status=status.value)

    async def _record_pending_refund(self, account_id: str, generation_id: str, amount: int, error: str) -> None:
        try:
            async with self.sessionmaker() as session:
                async with store_errors(session):
                    session.add(
                        PendingRefund(
                            account_id=account_id,
                            generation_id=generation_id,
                            amount=amount,
                            reason=LedgerSource.REFUND_FAILED_GENERATION,
                            error=error,
                            attempts=1,
                            created_at=self.clock(),
                        )
                    )
                    await session.commit()
        except StoreUnavailable:
            # The critical log line above is the only record left.
            logger.critical(
                'pending_refund_record_failed',
                account_id=account_id,
                generation_id=generation_id,
                amount=amount,
            )
