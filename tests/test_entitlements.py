from datetime import datetime, timedelta, timezone

import pytest

from studio.config import BillingConfig
from studio.db.models import GenerationStatus, Plan
from studio.errors import DenialReason, ValidationError
from studio.services.entitlements import EntitlementResolver


pytestmark = pytest.mark.asyncio


async def test_first_generation_is_free_regardless_of_balance(session, config, clock, make_account):
    account_id = await make_account(balance=0)

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.allowed is True
    assert result.credit_cost == 0
    assert result.is_free_generation is False
    assert result.first_generation is True
    assert result.watermark is False


async def test_free_daily_generation_when_balance_is_short(session, config, clock, make_account, add_generations):
    account_id = await make_account(balance=5)
    await add_generations(account_id, 2, clock() - timedelta(hours=1), is_free=True)

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'logo')

    assert result.allowed is True
    assert result.is_free_generation is True
    assert result.credit_cost == 0
    assert result.free_generations_used == 2
    assert result.watermark is True


async def test_exhausted_free_generations_deny_without_credits(session, clock, make_account, add_generations):
    config = BillingConfig(free_daily_generation_limit=3)
    account_id = await make_account(balance=0)
    await add_generations(account_id, 3, clock() - timedelta(hours=2), is_free=True)

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.allowed is False
    assert result.reason == DenialReason.NO_CREDITS_NO_FREE_GENERATIONS
    assert result.credit_cost == 0


async def test_daily_limit_wins_when_both_denials_apply(session, config, clock, make_account, add_generations):
    account_id = await make_account(balance=0)
    await add_generations(account_id, 5, clock() - timedelta(hours=2), is_free=True)

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.allowed is False
    assert result.reason == DenialReason.DAILY_LIMIT_REACHED
    assert result.daily_limit == 5
    assert result.generations_today == 5


async def test_paid_generation_uses_fixed_type_price(session, config, clock, make_account, add_generations):
    account_id = await make_account(balance=100)
    await add_generations(account_id, 1, clock() - timedelta(days=3))

    resolver = EntitlementResolver(session, config, clock)
    general = await resolver.resolve(account_id, 'general', resolution='landscape')
    poster = await resolver.resolve(account_id, 'poster', resolution='normal')

    assert (general.allowed, general.is_free_generation, general.credit_cost) == (True, False, 10)
    assert (poster.allowed, poster.is_free_generation, poster.credit_cost) == (True, False, 50)


async def test_generation_type_is_normalized(session, config, clock, make_account, add_generations):
    account_id = await make_account(balance=100)
    await add_generations(account_id, 1, clock() - timedelta(days=3))

    result = await EntitlementResolver(session, config, clock).resolve(account_id, ' Image-To-Image ')

    assert result.credit_cost == 10


async def test_paid_plan_with_short_balance_is_priced_not_free(session, config, clock, make_account, add_generations):
    expiry = clock() + timedelta(days=10)
    account_id = await make_account(balance=0, plan=Plan.CREATOR, plan_expiry=expiry)
    await add_generations(account_id, 1, clock() - timedelta(days=3))

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.allowed is True
    assert result.is_free_generation is False
    assert result.credit_cost == 10


async def test_plan_daily_limit(session, config, clock, make_account, add_generations):
    expiry = clock() + timedelta(days=10)
    account_id = await make_account(balance=1000, plan=Plan.CREATOR, plan_expiry=expiry)
    await add_generations(account_id, 15, clock() - timedelta(hours=3))

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.allowed is False
    assert result.reason == DenialReason.DAILY_LIMIT_REACHED
    assert result.daily_limit == 15


async def test_yesterdays_generations_do_not_count(session, config, clock, make_account, add_generations):
    expiry = clock() + timedelta(days=10)
    account_id = await make_account(balance=1000, plan=Plan.CREATOR, plan_expiry=expiry)
    # 23:59 on the previous calendar day, well inside a rolling 24h window.
    await add_generations(account_id, 15, datetime(2026, 3, 9, 23, 59, tzinfo=timezone.utc))

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.allowed is True
    assert result.generations_today == 0


async def test_day_boundary_follows_configured_timezone(session, clock, make_account, add_generations):
    # 12:00 UTC is 17:30 in Kolkata; local midnight is 18:30 UTC on the previous day.
    config = BillingConfig(timezone='Asia/Kolkata')
    account_id = await make_account(balance=1000)
    await add_generations(account_id, 2, datetime(2026, 3, 9, 18, 0, tzinfo=timezone.utc))
    await add_generations(account_id, 3, datetime(2026, 3, 9, 19, 0, tzinfo=timezone.utc))

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.generations_today == 3
    assert result.allowed is True


async def test_midnight_resets_the_counter(session, config, clock, make_account, add_generations):
    account_id = await make_account(balance=0)
    await add_generations(account_id, 5, clock() - timedelta(hours=1), is_free=True)
    resolver = EntitlementResolver(session, config, clock)

    denied = await resolver.resolve(account_id, 'general')
    clock.now = datetime(2026, 3, 11, 0, 0, tzinfo=timezone.utc)
    allowed = await resolver.resolve(account_id, 'general')

    assert denied.reason == DenialReason.DAILY_LIMIT_REACHED
    assert allowed.allowed is True
    assert allowed.is_free_generation is True


async def test_expired_plan_is_treated_as_free(session, config, clock, make_account, add_generations):
    expired = clock() - timedelta(minutes=1)
    account_id = await make_account(balance=0, plan=Plan.ENTERPRISE, plan_expiry=expired)
    await add_generations(account_id, 5, clock() - timedelta(hours=1))

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.plan == Plan.FREE
    assert result.daily_limit == 5
    assert result.reason == DenialReason.DAILY_LIMIT_REACHED


async def test_rejected_and_refunded_attempts_do_not_count(session, config, clock, make_account, add_generations):
    account_id = await make_account(balance=0)
    earlier = clock() - timedelta(hours=1)
    await add_generations(account_id, 4, earlier, status=GenerationStatus.REJECTED)
    await add_generations(account_id, 4, earlier, status=GenerationStatus.REFUNDED)

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.generations_today == 0
    assert result.first_generation is True


async def test_in_flight_attempts_count(session, config, clock, make_account, add_generations):
    account_id = await make_account(balance=0)
    await add_generations(account_id, 5, clock() - timedelta(minutes=5), status=GenerationStatus.PENDING)

    result = await EntitlementResolver(session, config, clock).resolve(account_id, 'general')

    assert result.reason == DenialReason.DAILY_LIMIT_REACHED


async def test_unknown_type_and_account_are_invalid(session, config, clock, make_account):
    account_id = await make_account()
    resolver = EntitlementResolver(session, config, clock)

    with pytest.raises(ValidationError):
        await resolver.resolve(account_id, 'hologram')
    with pytest.raises(ValidationError):
        await resolver.resolve('no-such-account', 'general')
