"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), 'postgresql')


def upgrade() -> None:
    op.create_table(
        'accounts',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('balance', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('plan', sa.String(length=32), nullable=False, server_default='free'),
        sa.Column('plan_expiry', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('email', name='uq_accounts_email'),
        sa.CheckConstraint('balance >= 0', name='ck_accounts_balance_non_negative'),
    )

    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('account_id', sa.String(length=36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(length=16), nullable=False),
        sa.Column('source', sa.String(length=64), nullable=False),
        sa.Column('reference_id', sa.String(length=128), nullable=True),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('meta', JSON_TYPE, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('source', 'reference_id', name='uq_ledger_entries_source_reference'),
        sa.CheckConstraint('amount > 0', name='ck_ledger_entries_amount_positive'),
    )
    op.create_index('ix_ledger_entries_account_id', 'ledger_entries', ['account_id'])
    op.create_index('ix_ledger_entries_account_created', 'ledger_entries', ['account_id', 'created_at'])

    op.create_table(
        'generations',
        sa.Column('id', sa.String(length=36), primary_key=True),
        sa.Column('account_id', sa.String(length=36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('generation_type', sa.String(length=32), nullable=False),
        sa.Column('resolution', sa.String(length=32), nullable=True),
        sa.Column('prompt', sa.Text(), nullable=True),
        sa.Column('is_free_generation', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_watermark', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('credit_cost', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('result', JSON_TYPE, nullable=False),
        sa.Column('error', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_generations_account_id', 'generations', ['account_id'])
    op.create_index('ix_generations_account_created', 'generations', ['account_id', 'created_at'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(length=128), nullable=False),
        sa.Column('account_id', sa.String(length=36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('gateway_payment_id', sa.String(length=128), nullable=True),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('plan', sa.String(length=32), nullable=True),
        sa.Column('amount', sa.String(length=32), nullable=False),
        sa.Column('credits_amount', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('order_id', name='uq_payments_order_id'),
    )
    op.create_index('ix_payments_account_id', 'payments', ['account_id'])

    op.create_table(
        'payment_events',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('order_id', sa.String(length=128), nullable=True),
        sa.Column('account_id', sa.String(length=36), nullable=True),
        sa.Column('variant', sa.String(length=32), nullable=False),
        sa.Column('gateway_status', sa.String(length=32), nullable=True),
        sa.Column('amount', sa.String(length=32), nullable=True),
        sa.Column('outcome', sa.String(length=32), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_payment_events_order_id', 'payment_events', ['order_id'])

    op.create_table(
        'pending_refunds',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('account_id', sa.String(length=36), sa.ForeignKey('accounts.id'), nullable=False),
        sa.Column('generation_id', sa.String(length=36), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_pending_refunds_account_id', 'pending_refunds', ['account_id'])


def downgrade() -> None:
    op.drop_index('ix_pending_refunds_account_id', table_name='pending_refunds')
    op.drop_table('pending_refunds')
    op.drop_index('ix_payment_events_order_id', table_name='payment_events')
    op.drop_table('payment_events')
    op.drop_index('ix_payments_account_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_generations_account_created', table_name='generations')
    op.drop_index('ix_generations_account_id', table_name='generations')
    op.drop_table('generations')
    op.drop_index('ix_ledger_entries_account_created', table_name='ledger_entries')
    op.drop_index('ix_ledger_entries_account_id', table_name='ledger_entries')
    op.drop_table('ledger_entries')
    op.drop_table('accounts')
