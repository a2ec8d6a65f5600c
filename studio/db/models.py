from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from studio.db.base import Base, JSONType
from studio.utils.time import utcnow


class Plan(str, Enum):
    FREE = 'free'
    CREATOR = 'creator'
    PROFESSIONAL = 'professional'
    ENTERPRISE = 'enterprise'


class Direction(str, Enum):
    CREDIT = 'credit'
    DEBIT = 'debit'


class LedgerSource(str, Enum):
    PURCHASE = 'purchase'
    ADMIN_ADJUSTMENT = 'admin_adjustment'
    INITIAL_SIGNUP = 'initial_signup'
    PLAN_SUBSCRIPTION = 'plan_subscription'
    IMAGE_GENERATION = 'image_generation'
    REFUND_FAILED_GENERATION = 'refund_failed_generation'


class GenerationStatus(str, Enum):
    PENDING = 'pending'
    CHARGED = 'charged'
    SETTLED = 'settled'
    REJECTED = 'rejected'
    REFUNDED = 'refunded'
    REFUND_FAILED = 'refund_failed'


# Attempts that occupy a slot in the daily counters.
COUNTED_GENERATION_STATUSES = (
    GenerationStatus.PENDING,
    GenerationStatus.CHARGED,
    GenerationStatus.SETTLED,
)


def _enum_column(enum_cls: type[Enum], length: int = 32) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        create_constraint=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


def _uuid() -> str:
    return str(uuid.uuid4())


class Account(Base):
    __tablename__ = 'accounts'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    balance: Mapped[int] = mapped_column(Integer, default=0)
    plan: Mapped[Plan] = mapped_column(_enum_column(Plan), default=Plan.FREE)
    plan_expiry: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    ledger_entries: Mapped[list['LedgerEntry']] = relationship(back_populates='account')
    generations: Mapped[list['Generation']] = relationship(back_populates='account')

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_accounts_balance_non_negative'),
    )


class LedgerEntry(Base):
    __tablename__ = 'ledger_entries'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(ForeignKey('accounts.id'), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    direction: Mapped[Direction] = mapped_column(_enum_column(Direction, 16))
    source: Mapped[LedgerSource] = mapped_column(_enum_column(LedgerSource, 64))
    reference_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    balance_after: Mapped[int] = mapped_column(Integer)
    meta: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    account: Mapped['Account'] = relationship(back_populates='ledger_entries')

    __table_args__ = (
        UniqueConstraint('source', 'reference_id', name='uq_ledger_entries_source_reference'),
        CheckConstraint('amount > 0', name='ck_ledger_entries_amount_positive'),
        Index('ix_ledger_entries_account_created', 'account_id', 'created_at'),
    )

    @property
    def signed_amount(self) -> int:
        return self.amount if self.direction == Direction.CREDIT else -self.amount


class Generation(Base):
    __tablename__ = 'generations'

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    account_id: Mapped[str] = mapped_column(ForeignKey('accounts.id'), index=True)
    generation_type: Mapped[str] = mapped_column(String(32))
    resolution: Mapped[str | None] = mapped_column(String(32), nullable=True)
    prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_free_generation: Mapped[bool] = mapped_column(Boolean, default=False)
    has_watermark: Mapped[bool] = mapped_column(Boolean, default=False)
    credit_cost: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[GenerationStatus] = mapped_column(
        _enum_column(GenerationStatus, 16), default=GenerationStatus.PENDING
    )
    result: Mapped[dict] = mapped_column(JSONType, default=dict)
    error: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    account: Mapped['Account'] = relationship(back_populates='generations')

    __table_args__ = (
        Index('ix_generations_account_created', 'account_id', 'created_at'),
    )


class Payment(Base):
    __tablename__ = 'payments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(String(128), unique=True)
    account_id: Mapped[str] = mapped_column(ForeignKey('accounts.id'), index=True)
    gateway_payment_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    kind: Mapped[str] = mapped_column(String(16))
    plan: Mapped[Plan | None] = mapped_column(_enum_column(Plan), nullable=True)
    amount: Mapped[str] = mapped_column(String(32))
    credits_amount: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(32))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PaymentEvent(Base):
    __tablename__ = 'payment_events'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    account_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    variant: Mapped[str] = mapped_column(String(32))
    gateway_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    amount: Mapped[str | None] = mapped_column(String(32), nullable=True)
    outcome: Mapped[str] = mapped_column(String(32))
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class PendingRefund(Base):
    __tablename__ = 'pending_refunds'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[str] = mapped_column(ForeignKey('accounts.id'), index=True)
    generation_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    amount: Mapped[int] = mapped_column(Integer)
    reason: Mapped[LedgerSource] = mapped_column(_enum_column(LedgerSource, 64))
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
