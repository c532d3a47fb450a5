# deploy_agent/backend/main.py
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deploy_agent.backend.core.config import Settings, load_settings
from deploy_agent.backend.core.errors import AuthError, InternalFault
from deploy_agent.backend.core.logging_config import setup_logging
from deploy_agent.backend.core.tokens import TokenCodec
from deploy_agent.backend.routers import auth
from deploy_agent.backend.services.auth_service import SessionService
from deploy_agent.backend.services.credential_store import InMemoryCredentialStore
from deploy_agent.backend.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def create_app(
    settings: Optional[Settings] = None,
    *,
    clock: Callable[[], datetime] = _utcnow,
) -> FastAPI:
    """
    Build the app and its auth components. Raises ConfigurationError before
    anything is wired if the configuration is unusable.
    """
    settings = settings or load_settings()
    setup_logging(settings.log_level)

    codec = TokenCodec.from_settings(settings, clock=clock)
    credentials = InMemoryCredentialStore.from_settings(settings)
    registry = SessionRegistry(clock=clock)
    session_service = SessionService(
        credentials,
        codec,
        registry,
        refresh_ttl=settings.refresh_token_duration,
        clock=clock,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        registry.start_sweeper(settings.session_sweep_interval, settings.refresh_token_duration)
        try:
            yield
        finally:
            registry.shutdown()

    app = FastAPI(
        title="Deploy Agent Auth",
        version=os.getenv("APP_VERSION", "0.1.0"),
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.token_codec = codec
    app.state.credentials = credentials
    app.state.session_registry = registry
    app.state.session_service = session_service

    # CORS (쿠키 인증이므로 allow_credentials 필요)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AuthError)
    async def _unauthorized(request: Request, exc: AuthError):
        logger.info("unauthorized %s %s: %s", request.method, request.url.path, type(exc).__name__)
        return JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"detail": "Unauthorized"},
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(InternalFault)
    async def _internal_fault(request: Request, exc: InternalFault):
        logger.error("internal fault on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal server error"},
        )

    # 라우터 등록
    app.include_router(auth.auth_router)

    # the refresh cookie is only sent under its own path, so logout is served there too
    logout_alias = settings.refresh_cookie_path.rstrip("/") + "/logout"
    if logout_alias != "/auth/logout":
        app.add_api_route(logout_alias, auth.logout, methods=["POST"], tags=["auth"])

    @app.get("/health")
    def health_app():
        return {"ok": True, "sweeper": registry.sweeper_running}

    logger.info(
        "auth ready: %d identities, access=%ss refresh=%ss, secure_cookies=%s",
        credentials.count(),
        settings.access_max_age,
        settings.refresh_max_age,
        settings.is_production,
    )
    return app
