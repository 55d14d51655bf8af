"""FastAPI application wiring for the identity service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import ConnectionPool

from .api.error_handling import register_exception_handlers
from .api.routes import router as auth_router
from .config import Settings, get_settings
from .domain.service import AuthService
from .notifications.dispatcher import NotificationDispatcher
from .notifications.email import LoggingEmailProvider, ResendEmailProvider
from .repository import AccountRepository
from .security.otp import OtpService
from .security.tokens import TokenCodec

logger = logging.getLogger(__name__)


def build_auth_service(
    settings: Settings, repository: AccountRepository
) -> tuple[AuthService, NotificationDispatcher]:
    """Construct the service graph; raises ``ConfigurationError`` on an unusable signing secret."""
    codec = TokenCodec.from_settings(settings)
    if settings.resend_api_key:
        email = ResendEmailProvider(settings.resend_api_key, settings.resend_sender_email)
    else:
        logger.warning("RESEND_API_KEY not configured; outbound email is logged, not sent")
        email = LoggingEmailProvider()
    dispatcher = NotificationDispatcher(
        email,
        repository,
        app_url=settings.app_url,
        otp_email_enabled=settings.otp_email_enabled,
        max_workers=settings.notification_workers,
    )
    service = AuthService(
        repository,
        codec,
        dispatcher,
        otp=OtpService(
            ttl=timedelta(seconds=settings.otp_ttl_seconds),
            max_attempts=settings.otp_max_attempts,
        ),
        reverify_after=timedelta(seconds=settings.reverify_after_seconds),
        reset_token_ttl=timedelta(seconds=settings.reset_token_ttl_seconds),
        admin_registration_secret=settings.admin_registration_secret,
    )
    return service, dispatcher


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services) for the app lifecycle."""
    settings: Settings = app.state.settings
    pool = ConnectionPool(settings.database_url, open=False)
    pool.open()
    app.state.pool = pool
    try:
        service, dispatcher = build_auth_service(settings, AccountRepository(pool))
    except Exception:
        pool.close()
        raise
    app.state.auth_service = service
    try:
        yield
    finally:
        dispatcher.shutdown(wait=True)
        pool.close()
        pool.wait_close()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.app_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=600,
    )
    register_exception_handlers(app, expose_internal_errors=not settings.is_production)

    @app.get("/healthz", tags=["health"])
    def healthz() -> dict[str, str]:
        """Return a minimal readiness indicator used by orchestration systems."""
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(auth_router)
    return app


app = create_app()
