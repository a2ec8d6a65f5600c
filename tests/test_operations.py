import pytest
from sqlalchemy import update

from studio.db.models import Account, Direction, LedgerSource, PendingRefund
from studio.errors import InsufficientCredits, ValidationError
from studio.services.admin import AdminService
from studio.services.analytics import AnalyticsService
from studio.services.authorization import CreditAuthorizationEngine
from studio.services.ledger import LedgerStore
from studio.services.reconciliation import ReconciliationService
from studio.utils.time import utcnow


pytestmark = pytest.mark.asyncio


async def test_admin_adjustment_credits_and_debits(sessionmaker, make_account, ledger_totals):
    account_id = await make_account()

    async with sessionmaker() as session:
        service = AdminService(session)
        credit = await service.adjust_credits(account_id, 120, 'support goodwill', admin_id='admin-1')
        debit = await service.adjust_credits(account_id, -20, 'chargeback')

    assert (credit.direction, credit.amount, credit.balance_after) == (Direction.CREDIT, 120, 120)
    assert (debit.direction, debit.amount, debit.balance_after) == (Direction.DEBIT, 20, 100)
    assert credit.meta == {'reason': 'support goodwill', 'admin_id': 'admin-1'}
    assert await ledger_totals(account_id) == (100, 100, 2)


async def test_admin_adjustment_cannot_overdraw(sessionmaker, make_account, ledger_totals):
    account_id = await make_account(balance=10)

    async with sessionmaker() as session:
        with pytest.raises(InsufficientCredits):
            await AdminService(session).adjust_credits(account_id, -11, 'oops')

    assert await ledger_totals(account_id) == (10, 10, 1)


@pytest.mark.parametrize('amount,reason', [(0, 'nothing'), (10, '  '), (True, 'bool')])
async def test_admin_adjustment_validation(session, make_account, amount, reason):
    account_id = await make_account()
    with pytest.raises(ValidationError):
        await AdminService(session).adjust_credits(account_id, amount, reason)


async def test_credit_stats_totals(sessionmaker, make_account):
    first = await make_account(balance=500)
    second = await make_account(balance=200)
    async with sessionmaker() as session:
        await CreditAuthorizationEngine(session).authorize_and_charge(first, 50, reference_id='g-1')
    async with sessionmaker() as session:
        await CreditAuthorizationEngine(session).authorize_and_charge(second, 25, reference_id='g-2')

    async with sessionmaker() as session:
        stats = await AnalyticsService(session).credit_stats(days=7)

    assert stats['total_credited'] == 700
    assert stats['total_debited'] == 75
    assert stats['net'] == 625
    assert {'source': 'image_generation', 'direction': 'debit', 'total': 75} in stats['by_source']
    assert {'source': 'admin_adjustment', 'direction': 'credit', 'total': 700} in stats['by_source']
    assert stats['daily'] == [{'date': utcnow().date().isoformat(), 'credited': 700, 'debited': 75}]


async def test_replay_is_idempotent_when_refund_already_landed(sessionmaker, make_account, ledger_totals):
    account_id = await make_account(balance=100)
    async with sessionmaker() as session:
        engine = CreditAuthorizationEngine(session)
        await engine.authorize_and_charge(account_id, 50, reference_id='gen-late')
        await engine.refund(account_id, 50, reference_id='gen-late')
        session.add(
            PendingRefund(
                account_id=account_id,
                generation_id='gen-late',
                amount=50,
                reason=LedgerSource.REFUND_FAILED_GENERATION,
                error='timeout on commit acknowledgement',
                attempts=1,
            )
        )
        await session.commit()

    async with sessionmaker() as session:
        service = ReconciliationService(session)
        first = await service.replay_pending_refunds()
        second = await service.replay_pending_refunds()
        remaining = await service.pending_refunds()

    assert (first.replayed, first.already_applied, first.failed) == (0, 1, 0)
    assert (second.replayed, second.already_applied) == (0, 0)
    assert remaining == []
    assert await ledger_totals(account_id) == (100, 100, 3)


async def test_replay_reports_unknown_accounts(sessionmaker, make_account):
    account_id = await make_account()
    async with sessionmaker() as session:
        session.add(
            PendingRefund(
                account_id=account_id,
                generation_id='gen-1',
                amount=10,
                reason=LedgerSource.REFUND_FAILED_GENERATION,
            )
        )
        await session.commit()
        await session.execute(update(PendingRefund).values(account_id='vanished'))
        await session.commit()

    async with sessionmaker() as session:
        summary = await ReconciliationService(session).replay_pending_refunds()

    assert summary.failed == 1
    assert summary.resolved_ids == []


async def test_audit_detects_balance_drift(sessionmaker, make_account):
    account_id = await make_account(balance=80)
    async with sessionmaker() as session:
        await LedgerStore(session).append(account_id, 30, Direction.DEBIT, LedgerSource.IMAGE_GENERATION)
        await session.commit()

    async with sessionmaker() as session:
        healthy = await ReconciliationService(session).audit_account(account_id)
        await session.execute(update(Account).where(Account.id == account_id).values(balance=75))
        await session.commit()
        drifted = await ReconciliationService(session).audit_account(account_id)

    assert healthy.ok is True
    assert (healthy.balance, healthy.ledger_sum, healthy.entries) == (50, 50, 2)
    assert drifted.ok is False
    assert drifted.chain_consistent is True
    assert drifted.balance == 75
