import base64
import json
from datetime import timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from itsdangerous import TimestampSigner

from studio.config import get_settings
from studio.services.webhooks import WebhookIngestionHandler
from studio.utils.time import utcnow
from studio.web.app import create_app


pytestmark = pytest.mark.asyncio


class FakeGenerator:
    def __init__(self) -> None:
        self.fail = False

    async def generate(self, request, *, reduced_quality=False):
        if self.fail:
            raise RuntimeError('provider down')
        return {'images': [{'base64': 'aW1n', 'seed': 7}], 'reduced': reduced_quality}


def session_cookie(data: dict) -> str:
    signer = TimestampSigner(get_settings().web_secret)
    payload = base64.b64encode(json.dumps(data).encode('utf-8'))
    return signer.sign(payload).decode('utf-8')


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest_asyncio.fixture
async def client(sessionmaker, config, generator):
    app = create_app(sessionmaker=sessionmaker, config=config, generator=generator)
    async with AsyncClient(transport=ASGITransport(app=app), base_url='http://test') as ac:
        yield ac


def login(client: AsyncClient, account_id: str | None = None, is_admin: bool = False) -> None:
    data = {'is_admin': is_admin}
    if account_id:
        data['account_id'] = account_id
    client.cookies.set('session', session_cookie(data))


async def test_health(client):
    resp = await client.get('/health')
    assert resp.status_code == 200
    assert resp.json() == {'ok': True}


async def test_account_routes_require_a_session(client):
    for path in ('/api/me/credits', '/api/me/credits/history', '/api/me/entitlement'):
        resp = await client.get(path)
        assert resp.status_code == 401


async def test_credits_and_history(client, make_account):
    account_id = await make_account(balance=250)
    login(client, account_id)

    credits = await client.get('/api/me/credits')
    history = await client.get('/api/me/credits/history', params={'page_size': 10, 'direction': 'credit'})
    bad_filter = await client.get('/api/me/credits/history', params={'direction': 'sideways'})

    assert credits.json()['balance'] == 250
    assert credits.json()['plan'] == 'free'
    body = history.json()
    assert body['total'] == 1
    assert body['entries'][0]['amount'] == 250
    assert body['entries'][0]['source'] == 'admin_adjustment'
    assert bad_filter.status_code == 400
    assert bad_filter.json()['error'] == 'VALIDATION_ERROR'


async def test_entitlement_preview(client, make_account):
    account_id = await make_account(balance=0)
    login(client, account_id)

    resp = await client.get('/api/me/entitlement', params={'generation_type': 'logo'})
    unknown = await client.get('/api/me/entitlement', params={'generation_type': 'hologram'})

    assert resp.status_code == 200
    assert resp.json()['first_generation'] is True
    assert resp.json()['credit_cost'] == 0
    assert unknown.status_code == 400


async def test_generate_charges_and_settles(client, make_account, add_generations, ledger_totals):
    account_id = await make_account(balance=100)
    await add_generations(account_id, 1, utcnow() - timedelta(days=2))
    login(client, account_id)

    resp = await client.post('/api/generate', json={'generation_type': 'logo', 'prompt': 'owl mascot'})

    assert resp.status_code == 200
    assert resp.json()['status'] == 'settled'
    assert resp.json()['credit_cost'] == 25
    assert await ledger_totals(account_id) == (75, 75, 2)


async def test_generate_failure_reports_refund(client, generator, make_account, add_generations, ledger_totals):
    account_id = await make_account(balance=100)
    await add_generations(account_id, 1, utcnow() - timedelta(days=2))
    login(client, account_id)
    generator.fail = True

    resp = await client.post('/api/generate', json={'generation_type': 'poster', 'prompt': 'sale'})

    assert resp.status_code == 502
    assert resp.json() == {'error': 'GENERATION_FAILED', 'message': 'provider down', 'refunded': True}
    assert await ledger_totals(account_id) == (100, 100, 3)


async def test_generate_denial_is_typed(client, make_account, add_generations):
    account_id = await make_account(balance=0)
    await add_generations(account_id, 5, utcnow() - timedelta(seconds=5), is_free=True)
    login(client, account_id)

    resp = await client.post('/api/generate', json={'generation_type': 'general', 'prompt': 'x'})

    assert resp.status_code == 403
    assert resp.json()['error'] == 'DAILY_LIMIT_REACHED'
    assert resp.json()['daily_limit'] == 5


async def test_subscribe_with_credits(client, make_account):
    account_id = await make_account(balance=2500)
    login(client, account_id)

    ok = await client.post('/api/plans/subscribe', json={'plan': 'creator'})
    broke = await client.post('/api/plans/subscribe', json={'plan': 'enterprise'})

    assert ok.status_code == 200
    assert ok.json()['balance'] == 500
    assert ok.json()['plan'] == 'creator'
    assert broke.status_code == 402
    assert broke.json()['error'] == 'INSUFFICIENT_CREDITS'
    assert broke.json()['balance'] == 500


async def test_webhook_always_acknowledges(client, make_account, ledger_totals):
    account_id = await make_account()
    body = json.dumps({
        'data': {
            'order': {'order_id': 'web-1', 'order_amount': '300.00'},
            'payment': {'payment_status': 'SUCCESS', 'cf_payment_id': 'p-1'},
            'customer_details': {'customer_id': account_id},
        }
    }).encode('utf-8')
    secret = get_settings().cashfree_webhook_secret
    good = WebhookIngestionHandler.compute_signature(secret, body, '1700000000')
    headers = {'content-type': 'application/json', 'x-webhook-timestamp': '1700000000'}

    forged = await client.post('/api/webhooks/cashfree', content=body, headers={**headers, 'x-webhook-signature': 'bad'})
    accepted = await client.post('/api/webhooks/cashfree', content=body, headers={**headers, 'x-webhook-signature': good})
    repeat = await client.post('/api/webhooks/cashfree', content=body, headers={**headers, 'x-webhook-signature': good})

    for resp in (forged, accepted, repeat):
        assert resp.status_code == 200
        assert resp.json() == {'received': True}
    assert await ledger_totals(account_id) == (300, 300, 1)


async def test_admin_routes_require_admin(client, make_account):
    account_id = await make_account()
    login(client, account_id)

    resp = await client.post(f'/api/admin/accounts/{account_id}/credits', json={'amount': 10, 'reason': 'x'})
    stats = await client.get('/api/admin/stats/credits')

    assert resp.status_code == 403
    assert stats.status_code == 403


async def test_admin_adjust_stats_and_replay(client, make_account, ledger_totals):
    account_id = await make_account()
    login(client, 'admin-account', is_admin=True)

    adjusted = await client.post(
        f'/api/admin/accounts/{account_id}/credits', json={'amount': 40, 'reason': 'promo'}
    )
    stats = await client.get('/api/admin/stats/credits', params={'days': 1})
    replay = await client.post('/api/admin/reconciliation/replay', json={'limit': 10})

    assert adjusted.status_code == 200
    assert adjusted.json()['balance'] == 40
    assert stats.json()['total_credited'] == 40
    assert replay.json() == {'replayed': 0, 'already_applied': 0, 'failed': 0, 'resolved_ids': []}
    assert await ledger_totals(account_id) == (40, 40, 1)


async def test_request_id_is_echoed(client):
    given = await client.get('/health', headers={'x-request-id': 'req-123'})
    generated = await client.get('/health')

    assert given.headers['x-request-id'] == 'req-123'
    assert len(generated.headers['x-request-id']) == 32
