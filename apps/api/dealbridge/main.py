from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealbridge.api.routes import router as api_router
from dealbridge.auth.oauth import OAuthRefreshClient
from dealbridge.auth.refresh import TokenRefreshManager
from dealbridge.auth.service import TokenService
from dealbridge.core.config import get_settings
from dealbridge.integrations.pipedrive import PipedriveClient
from dealbridge.integrations.xero import XeroClient
from dealbridge.logging import configure_logging
from dealbridge.middleware.correlation_id import CorrelationIdMiddleware
from dealbridge.middleware.request_logging import RequestLoggingMiddleware
from dealbridge.otel import get_fastapi_server_request_hook, setup_otel
from dealbridge.projects.api import request_validation_error_response


configure_logging()
logger = logging.getLogger("dealbridge.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    timeout = settings.http_timeout_seconds

    oauth_client = OAuthRefreshClient(settings)
    crm_client = PipedriveClient(timeout=timeout)
    accounting_client = XeroClient(settings.xero_api_base_url, timeout=timeout)

    app.state.crm_client = crm_client
    app.state.accounting_client = accounting_client
    token_service = TokenService(
        oauth_client,
        TokenRefreshManager(min_interval_seconds=settings.token_refresh_min_interval_seconds),
    )
    app.state.token_service = token_service
    logger.info("app.started", extra={"service": settings.app_name})
    try:
        yield
    finally:
        await token_service.close()
        await crm_client.aclose()
        await accounting_client.aclose()
        logger.info("app.stopped", extra={"service": settings.app_name})


app = FastAPI(title="DealBridge API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)
app.add_exception_handler(RequestValidationError, request_validation_error_response)  # type: ignore[arg-type]

setup_otel(get_settings())

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
