"""
MusicLovely backend: quiz checkout and Cakto payment reconciliation.
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from src.config import get_settings
from src.api.router import api_router
from src.utils.logging import (
    configure_structured_logging,
    generate_correlation_id,
    set_correlation_id,
)

logger = logging.getLogger("musiclovely")

DEFAULT_ORIGINS = [
    "https://musiclovely.com",
    "https://www.musiclovely.com",
]
DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8080",
]
CORS_HEADERS = [
    "Authorization", "Content-Type", "Accept", "Origin", "X-Requested-With",
    "X-Correlation-ID", "X-Cakto-Signature", "X-Cakto-Token",
]


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Tags the request (and its log lines) with X-Correlation-ID, echoed back."""

    async def dispatch(self, request: Request, call_next) -> Response:
        cid = request.headers.get("X-Correlation-ID") or generate_correlation_id()
        set_correlation_id(cid)
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response


def build_allowed_origins(settings) -> list[str]:
    """Storefront origins + ALLOWED_ORIGINS, plus localhost outside production."""
    origins = list(DEFAULT_ORIGINS)
    for origin in (settings.allowed_origins or "").split(","):
        origin = origin.strip().rstrip("/")
        if origin and origin not in origins:
            origins.append(origin)
    if settings.app_env != "production":
        origins.extend(o for o in DEV_ORIGINS if o not in origins)
    return origins


def _warn_missing_credentials(settings) -> None:
    if not settings.cakto_webhook_secret:
        logger.warning(
            "CAKTO_WEBHOOK_SECRET not set - every Cakto webhook will be rejected. "
            "Set it to the secret configured in the Cakto dashboard."
        )
    if not settings.internal_service_key:
        logger.warning(
            "INTERNAL_SERVICE_KEY not set - webhook replays and the lyrics "
            "trigger cannot authenticate."
        )


def _init_sentry(settings) -> None:
    if not settings.sentry_dsn:
        return
    try:
        import sentry_sdk
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.app_env,
            traces_sample_rate=0.1,
        )
        logger.info("Sentry enabled for env=%s", settings.app_env)
    except Exception as e:
        logger.warning("Sentry init skipped: %s", str(e))


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info("MusicLovely starting up (env=%s)", settings.app_env)
    _warn_missing_credentials(settings)
    _init_sentry(settings)

    yield

    from src.database import dispose_engine
    await dispose_engine()
    logger.info("MusicLovely shutdown complete")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_structured_logging(settings.log_level)

    application = FastAPI(
        title="MusicLovely",
        description="Personalized song checkout and Cakto payment reconciliation",
        version="1.0.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=build_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=CORS_HEADERS,
    )
    application.add_middleware(SecurityHeadersMiddleware)
    # Added last so it is outermost: CORS preflights get an id too
    application.add_middleware(CorrelationIdMiddleware)

    application.include_router(api_router)
    return application


app = create_app()
