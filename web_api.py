from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from authlife.api.contracts import HealthResponse
from authlife.api.http_setup import register_exception_handlers, register_http_middleware
from authlife.auth.middleware import create_auth_middleware
from authlife.auth.repository import AuthStore, build_auth_store
from authlife.auth.router import create_auth_router
from authlife.auth.service import AuthService
from authlife.auth.sweeper import SessionSweeper
from authlife.core.clock import Clock, utc_now
from authlife.core.config import AppConfig
from authlife.core.logging import setup_logging
from authlife.core.security import PasswordVerifier

load_dotenv()
LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent


def create_app(
    config: AppConfig | None = None,
    *,
    app_root: Path = APP_ROOT,
    store: AuthStore | None = None,
    verifier: PasswordVerifier | None = None,
    clock: Clock = utc_now,
) -> FastAPI:
    app_config = config or AppConfig.from_env()
    setup_logging(app_config.logging.level)

    app = FastAPI(title="Authlife API", version="1.0.0")
    register_http_middleware(app, security=app_config.security, logger=LOGGER)
    register_exception_handlers(app, logger=LOGGER)

    auth_store = store or build_auth_store(app_config.storage, app_root)
    auth_service = AuthService(
        auth_store,
        app_config.policy,
        app_config.keys,
        verifier=verifier,
        clock=clock,
    )
    bootstrap = app_config.bootstrap
    if auth_service.bootstrap_admin(bootstrap.admin_login_key, bootstrap.admin_password):
        LOGGER.info("bootstrap_admin_ready")

    app.include_router(create_auth_router(auth_service))
    app.middleware("http")(create_auth_middleware(auth_service))
    app.state.auth_service = auth_service

    sweeper = SessionSweeper(auth_service, app_config.sweep)

    @app.get("/api/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_session_sweeper() -> None:
        if app_config.sweep.enabled:
            await sweeper.start()

    @app.on_event("shutdown")
    async def shutdown_session_sweeper() -> None:
        await sweeper.stop()
        auth_store.close()

    return app


app = create_app()
