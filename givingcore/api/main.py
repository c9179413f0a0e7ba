from fastapi import FastAPI
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from givingcore.api.rate_limit import limiter
from givingcore.api.routes_disputes import router as dispute_router
from givingcore.api.routes_health import router as health_router
from givingcore.api.routes_metrics import router as metrics_router
from givingcore.api.routes_reconciliation import router as reconciliation_router
from givingcore.api.routes_webhooks import router as webhook_router
from givingcore.core.config import settings
from givingcore.core.errors import register_error_handlers
from givingcore.core.logger import init_logging
from givingcore.core.monitoring import init_monitoring
from givingcore.services.payment_providers import ProviderClients
from givingcore.storage.evidence_store import EvidenceStore


async def _rate_limit_handler(request, exc: RateLimitExceeded):
    return JSONResponse(status_code=429, content={"detail": "Too many requests"})


def create_app(providers: ProviderClients | None = None, evidence_store: EvidenceStore | None = None) -> FastAPI:
    init_logging()
    init_monitoring()

    is_production = settings.ENV.lower() == "prod"
    app = FastAPI(
        title=settings.APP_NAME,
        debug=False,
        docs_url=None if is_production else "/docs",
        redoc_url=None if is_production else "/redoc",
        openapi_url=None if is_production else "/openapi.json",
    )
    # Provider clients are built once here and injected per request.
    app.state.providers = providers or ProviderClients.from_settings(settings)
    app.state.evidence_store = evidence_store or EvidenceStore.from_settings(settings)
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    register_error_handlers(app)

    app.include_router(webhook_router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(dispute_router, prefix="/disputes", tags=["disputes"])
    app.include_router(reconciliation_router, prefix="/reconciliation", tags=["reconciliation"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(health_router)
    return app
