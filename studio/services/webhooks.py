from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, ClassVar, Dict, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from studio.config import BillingConfig
from studio.db.models import Direction, LedgerSource, Payment, PaymentEvent, Plan
from studio.db.session import store_errors
from studio.errors import DuplicateLedgerEntry, StoreUnavailable, ValidationError, WebhookSignatureInvalid
from studio.services.ledger import LedgerStore
from studio.services.plans import PlanService, parse_plan
from studio.utils.credits import to_credit_amount
from studio.utils.logging import get_logger
from studio.utils.time import utcnow


logger = get_logger('webhooks')

SUCCESS_STATUSES = frozenset({'SUCCESS', 'PAID'})
LEGACY_PLAN_TAG = 'RS2000'
LEGACY_PLAN_AMOUNT = 2000


def _text(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip()


def _require(mapping: Dict[str, Any], key: str, where: str) -> Any:
    value = mapping.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f'missing {where}.{key}')
    return value


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ValidationError(f'missing data.{key}')
    return value


@dataclass(frozen=True)
class CashfreePayment:
    """Current gateway shape: customer under ``data.customer_details``."""

    variant: ClassVar[str] = 'cashfree'
    customer_key: ClassVar[str] = 'customer_details'

    order_id: str
    amount: str
    status: str
    customer_id: str
    customer_email: str = ''
    gateway_payment_id: str = ''
    order_note: str = ''
    order_tags: Any = field(default_factory=dict)

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> 'CashfreePayment':
        order = _section(data, 'order')
        payment = _section(data, 'payment')
        customer = _section(data, cls.customer_key)
        return cls(
            order_id=_text(_require(order, 'order_id', 'order')),
            amount=_text(_require(order, 'order_amount', 'order')),
            status=_text(_require(payment, 'payment_status', 'payment')).upper(),
            customer_id=_text(_require(customer, 'customer_id', cls.customer_key)),
            customer_email=_text(customer.get('customer_email')),
            gateway_payment_id=_text(payment.get('cf_payment_id')),
            order_note=_text(order.get('order_note')),
            order_tags=order.get('order_tags') or {},
        )

    def tag_values(self) -> List[str]:
        tags = self.order_tags
        if isinstance(tags, dict):
            return [_text(k) for k in tags] + [_text(v) for v in tags.values()]
        if isinstance(tags, (list, tuple)):
            return [_text(v) for v in tags]
        return [_text(tags)]

    def purchased_plan(self) -> Optional[Plan]:
        """Plan bought by this order, or ``None`` for a credit top-up."""
        if isinstance(self.order_tags, dict) and self.order_tags.get('plan'):
            return parse_plan(_text(self.order_tags['plan']))

        tags = self.tag_values()
        if LEGACY_PLAN_TAG in self.order_note or any(LEGACY_PLAN_TAG in t for t in tags):
            return Plan.PROFESSIONAL
        mentions_plan = 'plan' in self.order_note.lower() or any('plan' in t.lower() for t in tags)
        if mentions_plan and to_credit_amount(self.amount) == LEGACY_PLAN_AMOUNT:
            return Plan.PROFESSIONAL
        return None


@dataclass(frozen=True)
class LegacyCashfreePayment(CashfreePayment):
    """Older gateway shape: customer under ``data.customer``."""

    variant: ClassVar[str] = 'cashfree_legacy'
    customer_key: ClassVar[str] = 'customer'


@dataclass(frozen=True)
class UnrecognizedPayload:
    variant: ClassVar[str] = 'unrecognized'

    reason: str


PaymentPayload = Union[CashfreePayment, LegacyCashfreePayment, UnrecognizedPayload]


def parse_payment_payload(raw_body: bytes) -> PaymentPayload:
    try:
        body = json.loads(raw_body.decode('utf-8'))
    except (UnicodeDecodeError, ValueError):
        raise ValidationError('webhook body is not valid JSON') from None

    if not isinstance(body, dict) or not isinstance(body.get('data'), dict):
        return UnrecognizedPayload('missing data object')
    data = body['data']
    if isinstance(data.get(CashfreePayment.customer_key), dict):
        return CashfreePayment.parse(data)
    if isinstance(data.get(LegacyCashfreePayment.customer_key), dict):
        return LegacyCashfreePayment.parse(data)
    return UnrecognizedPayload('no customer section')


@dataclass
class IngestResult:
    outcome: str
    order_id: Optional[str] = None
    accepted: bool = True


class WebhookIngestionHandler:
    """Applies payment-gateway notifications exactly once per order id.

    Every delivery is acknowledged. Rejections are logged and recorded in
    ``payment_events`` but never surfaced to the gateway.
    """

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        config: BillingConfig,
        secret: str,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessionmaker = sessionmaker
        self.config = config
        self.secret = secret
        self.clock = clock

    @staticmethod
    def compute_signature(secret: str, raw_body: bytes, timestamp: str = '') -> str:
        message = (timestamp or '').encode('utf-8') + raw_body
        digest = hmac.new(secret.encode('utf-8'), message, hashlib.sha256).digest()
        return base64.b64encode(digest).decode('utf-8')

    @classmethod
    def verify_signature(cls, *, secret: str, raw_body: bytes, signature: str | None, timestamp: str = '') -> bool:
        received = (signature or '').strip()
        if not secret or not received:
            return False
        expected = cls.compute_signature(secret, raw_body, timestamp)
        return hmac.compare_digest(expected, received)

    async def ingest(self, raw_body: bytes, signature: str | None, timestamp: str | None = '') -> IngestResult:
        payload: Optional[PaymentPayload] = None
        try:
            self._require_signature(raw_body, signature, timestamp or '')
            payload = parse_payment_payload(raw_body)
            result = await self._apply(payload)
        except WebhookSignatureInvalid:
            logger.warning('webhook_signature_invalid', body_size=len(raw_body))
            result = IngestResult('signature_invalid')
        except ValidationError as exc:
            logger.warning('webhook_malformed', error=exc.message)
            result = IngestResult('malformed')
        except Exception:
            logger.exception('webhook_unhandled_error')
            result = IngestResult('internal_error')

        await self._observe(payload, result)
        return result

    def _require_signature(self, raw_body: bytes, signature: str | None, timestamp: str) -> None:
        if not self.verify_signature(secret=self.secret, raw_body=raw_body, signature=signature, timestamp=timestamp):
            raise WebhookSignatureInvalid()

    async def _apply(self, payload: PaymentPayload) -> IngestResult:
        if isinstance(payload, UnrecognizedPayload):
            logger.warning('webhook_unrecognized_payload', reason=payload.reason)
            return IngestResult('unrecognized')

        order_id = payload.order_id
        if payload.status not in SUCCESS_STATUSES:
            logger.info('webhook_status_ignored', order_id=order_id, status=payload.status)
            return IngestResult('ignored_status', order_id)

        try:
            plan = payload.purchased_plan()
        except ValidationError as exc:
            logger.warning('webhook_malformed', order_id=order_id, error=exc.message)
            return IngestResult('malformed', order_id)
        if plan == Plan.FREE:
            logger.warning('webhook_malformed', order_id=order_id, error='free plan cannot be purchased')
            return IngestResult('malformed', order_id)

        credits = to_credit_amount(payload.amount)
        if plan is None and credits <= 0:
            logger.warning('webhook_malformed', order_id=order_id, amount=payload.amount)
            return IngestResult('malformed', order_id)

        try:
            async with self.sessionmaker() as session:
                async with store_errors(session):
                    outcome = await self._settle(session, payload, plan, credits)
        except (DuplicateLedgerEntry, IntegrityError):
            # A concurrent delivery of the same order committed first.
            logger.info('webhook_duplicate', order_id=order_id, race=True)
            return IngestResult('duplicate', order_id)
        except StoreUnavailable as exc:
            logger.error('webhook_store_error', order_id=order_id, error=exc.message)
            return IngestResult('store_error', order_id)
        return IngestResult(outcome, order_id)

    async def _find_payment(self, session: AsyncSession, order_id: str) -> Optional[Payment]:
        result = await session.execute(select(Payment).where(Payment.order_id == order_id))
        return result.scalar_one_or_none()

    async def _settle(
        self,
        session: AsyncSession,
        payload: CashfreePayment,
        plan: Optional[Plan],
        credits: int,
    ) -> str:
        ledger = LedgerStore(session)
        order_id = payload.order_id
        if await ledger.find_by_reference(LedgerSource.PURCHASE, order_id) or await self._find_payment(
            session, order_id
        ):
            logger.info('webhook_duplicate', order_id=order_id)
            return 'duplicate'

        account = await ledger.get_account(payload.customer_id, lock=True)
        if not account:
            logger.warning('webhook_account_not_found', order_id=order_id, customer_id=payload.customer_id)
            return 'account_not_found'

        now = self.clock()
        session.add(
            Payment(
                order_id=order_id,
                account_id=account.id,
                gateway_payment_id=payload.gateway_payment_id or None,
                kind='plan' if plan else 'credits',
                plan=plan,
                amount=payload.amount,
                credits_amount=0 if plan else credits,
                status=payload.status,
                created_at=now,
            )
        )

        if plan:
            PlanService(session, self.config, self.clock).apply_plan_purchase(account, plan, now)
            await session.flush()
            outcome = 'plan_upgraded'
        else:
            await ledger.append(
                account.id,
                credits,
                Direction.CREDIT,
                LedgerSource.PURCHASE,
                reference_id=order_id,
                meta={'variant': payload.variant, 'amount': payload.amount, 'email': payload.customer_email},
            )
            outcome = 'credited'

        await session.commit()
        logger.info('webhook_applied', order_id=order_id, account_id=payload.customer_id, outcome=outcome)
        return outcome

    async def _observe(self, payload: Optional[PaymentPayload], result: IngestResult) -> None:
        order = payload if isinstance(payload, CashfreePayment) else None
        event = PaymentEvent(
            order_id=result.order_id or (order.order_id if order else None),
            account_id=order.customer_id[:36] if order else None,
            variant=payload.variant if payload is not None else 'none',
            gateway_status=order.status if order else None,
            amount=order.amount[:32] if order else None,
            outcome=result.outcome,
            received_at=self.clock(),
        )
        try:
            async with self.sessionmaker() as session:
                async with store_errors(session):
                    session.add(event)
                    await session.commit()
        except StoreUnavailable:
            logger.error('webhook_observation_lost', order_id=event.order_id, outcome=result.outcome)
