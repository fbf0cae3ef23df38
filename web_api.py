from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clinic.api.contracts import HealthResponse
from clinic.api.http_setup import register_exception_handlers, register_http_middleware
from clinic.auth.middleware import create_auth_middleware, create_role_guard
from clinic.auth.models import ROLES
from clinic.auth.rate_limiter import LoginRateLimiter
from clinic.auth.repository import AuthRepository
from clinic.auth.router import create_auth_router
from clinic.auth.service import AuthService
from clinic.core.config import AppConfig
from clinic.core.logging import setup_logging
from clinic.core.mongo_migrations import apply_mongo_migrations
from clinic.realtime.gateway import ConnectionHub, create_gateway_router
from clinic.realtime.router import create_realtime_router
from clinic.realtime.wiring import build_realtime_stack

load_dotenv()
APP_CONFIG = AppConfig.from_env()
setup_logging(APP_CONFIG.logging.level)
LOGGER = logging.getLogger(__name__)

APP_ROOT = Path(__file__).resolve().parent
RUNTIME_DIR = APP_ROOT / "runtime"
RUNTIME_DIR.mkdir(parents=True, exist_ok=True)


def create_app(config: AppConfig = APP_CONFIG, *, app_root: Path = APP_ROOT) -> FastAPI:
    app = FastAPI(title="Dental Clinic API", version="1.0.0")
    apply_mongo_migrations(config.store)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.security.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )
    register_http_middleware(app, config=config, logger=LOGGER)
    register_exception_handlers(app, logger=LOGGER)

    auth_repo = AuthRepository(app_root, config.store)
    auth_service = AuthService(auth_repo, config.auth)
    state_db_path = (app_root / config.security.state_sqlite_path).resolve()
    login_rate_limiter = LoginRateLimiter(
        database_path=state_db_path,
        max_attempts=config.security.login_rate_limit_max_attempts,
        window_seconds=config.security.login_rate_limit_window_seconds,
        lock_seconds=config.security.login_rate_limit_lock_seconds,
    )
    auth_service.bootstrap_admin_user()
    app.include_router(create_auth_router(auth_service, login_rate_limiter))
    app.middleware("http")(create_auth_middleware(auth_service))

    realtime = build_realtime_stack(lambda: config, auth_service.verify_access_token)
    require_staff = create_role_guard(auth_service, *ROLES)
    app.include_router(
        create_realtime_router(realtime.publisher, config.realtime, require_staff=require_staff)
    )
    app.include_router(
        create_gateway_router(
            realtime.handlers,
            ConnectionHub(),
            management_token=config.realtime.management_token,
        )
    )

    @app.on_event("shutdown")
    async def shutdown_resources() -> None:
        realtime.close()
        login_rate_limiter.close()

    @app.get("/api/health", response_model=HealthResponse)
    def health() -> HealthResponse:
        return HealthResponse(status="ok")

    return app


app = create_app()
