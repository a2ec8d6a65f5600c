from __future__ import annotations

from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.middleware.sessions import SessionMiddleware

from studio.config import BillingConfig, get_settings
from studio.db.models import Direction
from studio.db.session import create_sessionmaker, store_errors
from studio.errors import BillingError, ValidationError
from studio.services.accounts import AccountsService
from studio.services.admin import AdminService
from studio.services.analytics import AnalyticsService
from studio.services.entitlements import EntitlementResolver
from studio.services.generation import GenerationRequest, GenerationService, ImageGenerator
from studio.services.ledger import LedgerStore
from studio.services.plans import PlanService, effective_plan
from studio.services.reconciliation import ReconciliationService
from studio.services.stability_client import StabilityClient
from studio.services.webhooks import WebhookIngestionHandler
from studio.utils.logging import bind_log_context, get_logger
from studio.utils.time import utcnow


logger = get_logger('web')


class SubscribeBody(BaseModel):
    plan: str


class GenerateBody(BaseModel):
    generation_type: str = 'general'
    prompt: str = Field(min_length=1, max_length=2000)
    resolution: Optional[str] = None
    negative_prompt: Optional[str] = None
    style: Optional[str] = None


class AdjustCreditsBody(BaseModel):
    amount: int
    reason: str = Field(min_length=1, max_length=500)


class ReplayBody(BaseModel):
    limit: int = Field(100, ge=1, le=1000)


def _account_id(request: Request) -> str | None:
    value = request.session.get('account_id')
    return str(value) if value else None


def _is_admin(request: Request) -> bool:
    return bool(request.session.get('is_admin'))


def _unauthorized() -> JSONResponse:
    return JSONResponse({'error': 'unauthorized'}, status_code=401)


def _forbidden() -> JSONResponse:
    return JSONResponse({'error': 'forbidden'}, status_code=403)


def _parse_direction(value: str | None) -> Direction | None:
    if not value:
        return None
    try:
        return Direction(value.strip().lower())
    except ValueError:
        raise ValidationError(f'unknown direction: {value!r}') from None


def create_app(
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
    config: BillingConfig | None = None,
    generator: ImageGenerator | None = None,
) -> FastAPI:
    settings = get_settings()
    app = FastAPI(title='Studio Billing')
    app.add_middleware(SessionMiddleware, secret_key=settings.web_secret)
    app.state.sessionmaker = sessionmaker or create_sessionmaker()
    app.state.config = config or BillingConfig.from_settings(settings)
    app.state.generator = generator
    app.state.owns_generator = False

    if app.state.generator is None:
        app.state.generator = StabilityClient()
        app.state.owns_generator = True

    app.state.webhooks = WebhookIngestionHandler(
        app.state.sessionmaker,
        app.state.config,
        settings.cashfree_webhook_secret,
    )

    @app.middleware('http')
    async def request_context(request: Request, call_next):
        request_id = request.headers.get('x-request-id') or uuid4().hex
        bind_log_context(request_id=request_id, path=request.url.path)
        response = await call_next(request)
        response.headers['X-Request-ID'] = request_id
        return response

    @app.on_event('shutdown')
    async def shutdown() -> None:
        if app.state.owns_generator:
            await app.state.generator.close()

    @app.exception_handler(BillingError)
    async def billing_error_handler(request: Request, exc: BillingError):
        return JSONResponse(
            {'error': exc.code, 'message': exc.message, **exc.details()},
            status_code=exc.status_code,
        )

    @app.get('/health')
    async def health():
        return {'ok': True}

    @app.post('/api/webhooks/cashfree')
    async def cashfree_webhook(request: Request):
        raw_body = await request.body()
        signature = request.headers.get('x-webhook-signature') or request.headers.get('x-cf-signature')
        timestamp = request.headers.get('x-webhook-timestamp') or ''
        result = await app.state.webhooks.ingest(raw_body, signature, timestamp)
        logger.info('webhook_received', outcome=result.outcome, order_id=result.order_id)
        return {'received': True}

    @app.get('/api/me/credits')
    async def me_credits(request: Request):
        account_id = _account_id(request)
        if not account_id:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            async with store_errors(session):
                account = await AccountsService(session, app.state.config).require_account(account_id)
        plan = effective_plan(account, utcnow())
        return {
            'account_id': account.id,
            'balance': account.balance,
            'plan': plan.value,
            'plan_expiry': account.plan_expiry.isoformat() if account.plan_expiry else None,
        }

    @app.get('/api/me/credits/history')
    async def me_credit_history(request: Request, page: int = 1, page_size: int = 20, direction: str | None = None):
        account_id = _account_id(request)
        if not account_id:
            return _unauthorized()
        parsed_direction = _parse_direction(direction)
        async with app.state.sessionmaker() as session:
            async with store_errors(session):
                history = await LedgerStore(session).history(account_id, page, page_size, parsed_direction)
        return {
            'page': history.page,
            'page_size': history.page_size,
            'total': history.total,
            'pages': history.pages,
            'entries': [
                {
                    'id': entry.id,
                    'amount': entry.amount,
                    'direction': entry.direction.value,
                    'source': entry.source.value,
                    'reference_id': entry.reference_id,
                    'balance_after': entry.balance_after,
                    'created_at': entry.created_at.isoformat(),
                }
                for entry in history.entries
            ],
        }

    @app.get('/api/me/entitlement')
    async def me_entitlement(request: Request, generation_type: str = 'general', resolution: str | None = None):
        account_id = _account_id(request)
        if not account_id:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            async with store_errors(session):
                entitlement = await EntitlementResolver(session, app.state.config).resolve(
                    account_id, generation_type, resolution
                )
        return entitlement.as_dict()

    @app.post('/api/plans/subscribe')
    async def subscribe(request: Request, body: SubscribeBody):
        account_id = _account_id(request)
        if not account_id:
            return _unauthorized()
        async with app.state.sessionmaker() as session:
            async with store_errors(session):
                subscription = await PlanService(session, app.state.config).subscribe_with_credits(
                    account_id, body.plan
                )
        return {
            'plan': subscription.plan.value,
            'plan_expiry': subscription.expiry.isoformat(),
            'credits_charged': subscription.credits_charged,
            'balance': subscription.balance,
        }

    @app.post('/api/generate')
    async def generate(request: Request, body: GenerateBody):
        account_id = _account_id(request)
        if not account_id:
            return _unauthorized()
        service = GenerationService(app.state.sessionmaker, app.state.config, app.state.generator)
        result = await service.generate(
            account_id,
            GenerationRequest(
                generation_type=body.generation_type,
                prompt=body.prompt.strip(),
                resolution=body.resolution,
                negative_prompt=body.negative_prompt,
                style=body.style,
            ),
        )
        return result.as_dict()

    @app.post('/api/admin/accounts/{account_id}/credits')
    async def admin_adjust_credits(request: Request, account_id: str, body: AdjustCreditsBody):
        if not _is_admin(request):
            return _forbidden()
        async with app.state.sessionmaker() as session:
            entry = await AdminService(session).adjust_credits(
                account_id,
                body.amount,
                body.reason,
                admin_id=_account_id(request),
            )
        return {
            'account_id': account_id,
            'amount': entry.amount,
            'direction': entry.direction.value,
            'balance': entry.balance_after,
        }

    @app.get('/api/admin/stats/credits')
    async def admin_credit_stats(request: Request, days: int = 30):
        if not _is_admin(request):
            return _forbidden()
        async with app.state.sessionmaker() as session:
            async with store_errors(session):
                return await AnalyticsService(session, app.state.config.timezone).credit_stats(days)

    @app.post('/api/admin/reconciliation/replay')
    async def admin_replay_refunds(request: Request, body: ReplayBody | None = None):
        if not _is_admin(request):
            return _forbidden()
        limit = body.limit if body else 100
        async with app.state.sessionmaker() as session:
            summary = await ReconciliationService(session).replay_pending_refunds(limit)
        return summary.as_dict()

    return app
