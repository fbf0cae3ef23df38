"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


@dataclass(frozen=True)
class AuthConfig:
    """Authentication-related configuration."""

    enabled: bool
    secret_key: str
    access_token_ttl_seconds: int
    refresh_token_ttl_seconds: int
    issuer: str
    admin_email: str
    admin_password: str
    cookie_secure: bool = False


@dataclass(frozen=True)
class StoreConfig:
    """MongoDB connection settings shared by repositories."""

    mongo_uri: str
    mongo_db: str
    connections_collection: str
    server_selection_timeout_ms: int = 3000

    @property
    def configured(self) -> bool:
        """Return whether a backing store has been configured at all."""
        return bool(self.mongo_uri)


@dataclass(frozen=True)
class RealtimeConfig:
    """WebSocket fan-out and heartbeat settings."""

    ws_endpoint: str
    management_token: str
    request_timeout_seconds: float
    connection_ttl_seconds: int
    heartbeat_interval_seconds: int
    max_parallel_deliveries: int = 32

    @property
    def enabled(self) -> bool:
        """Return whether publishing has an endpoint to deliver to."""
        return bool(self.ws_endpoint)


@dataclass(frozen=True)
class LoggingConfig:
    """Structured logging configuration."""

    level: str


@dataclass(frozen=True)
class SecurityConfig:
    """API perimeter security settings."""

    cors_allowed_origins: list[str]
    request_max_bytes: int
    state_sqlite_path: str
    login_rate_limit_max_attempts: int
    login_rate_limit_window_seconds: int
    login_rate_limit_lock_seconds: int


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    auth: AuthConfig
    store: StoreConfig
    realtime: RealtimeConfig
    logging: LoggingConfig
    security: SecurityConfig

    @staticmethod
    def from_env() -> "AppConfig":
        """Build app config from process environment."""
        secret_key = (
            os.getenv("AUTH_SECRET_KEY", "").strip() or "dev-insecure-secret-change-me"
        )
        issuer = os.getenv("AUTH_ISSUER", "dental-clinic").strip() or "dental-clinic"
        connections_collection = (
            os.getenv("REALTIME_CONNECTIONS_COLLECTION", "").strip()
            or os.getenv("DDB_CONNECTIONS_TABLE", "").strip()
            or "ws_connections"
        )
        cors_allowed_origins = [
            origin.strip()
            for origin in os.getenv(
                "CORS_ALLOWED_ORIGINS",
                "http://localhost:3000,http://127.0.0.1:3000",
            ).split(",")
            if origin.strip()
        ]

        return AppConfig(
            auth=AuthConfig(
                enabled=_env_flag("AUTH_ENABLED", "1"),
                secret_key=secret_key,
                access_token_ttl_seconds=int(
                    os.getenv("AUTH_ACCESS_TOKEN_TTL_SECONDS", "900")
                ),
                refresh_token_ttl_seconds=int(
                    os.getenv("AUTH_REFRESH_TOKEN_TTL_SECONDS", "604800")
                ),
                issuer=issuer,
                admin_email=os.getenv("AUTH_ADMIN_EMAIL", "admin@clinic.local")
                .strip()
                .lower(),
                admin_password=os.getenv("AUTH_ADMIN_PASSWORD", "admin12345").strip(),
                cookie_secure=_env_flag("AUTH_COOKIE_SECURE", "0"),
            ),
            store=StoreConfig(
                mongo_uri=os.getenv("MONGODB_URI", "").strip(),
                mongo_db=os.getenv("MONGODB_DB", "dental_clinic").strip()
                or "dental_clinic",
                connections_collection=connections_collection,
                server_selection_timeout_ms=int(
                    os.getenv("MONGODB_SERVER_SELECTION_TIMEOUT_MS", "3000")
                ),
            ),
            realtime=RealtimeConfig(
                ws_endpoint=os.getenv("REALTIME_WS_ENDPOINT", "").strip().rstrip("/"),
                management_token=os.getenv("REALTIME_MANAGEMENT_TOKEN", "").strip(),
                request_timeout_seconds=float(
                    os.getenv("REALTIME_REQUEST_TIMEOUT_SECONDS", "5")
                ),
                connection_ttl_seconds=int(
                    os.getenv("REALTIME_CONNECTION_TTL_SECONDS", str(3 * 60 * 60))
                ),
                heartbeat_interval_seconds=int(
                    os.getenv("REALTIME_HEARTBEAT_INTERVAL_SECONDS", "300")
                ),
                max_parallel_deliveries=int(
                    os.getenv("REALTIME_MAX_PARALLEL_DELIVERIES", "32")
                ),
            ),
            logging=LoggingConfig(level=os.getenv("LOG_LEVEL", "INFO").strip() or "INFO"),
            security=SecurityConfig(
                cors_allowed_origins=cors_allowed_origins,
                request_max_bytes=int(os.getenv("REQUEST_MAX_BYTES", str(1024 * 1024))),
                state_sqlite_path=os.getenv(
                    "STATE_SQLITE_PATH", "runtime/app_state.db"
                ).strip()
                or "runtime/app_state.db",
                login_rate_limit_max_attempts=int(
                    os.getenv("LOGIN_RATE_LIMIT_MAX_ATTEMPTS", "20")
                ),
                login_rate_limit_window_seconds=int(
                    os.getenv("LOGIN_RATE_LIMIT_WINDOW_SECONDS", "900")
                ),
                login_rate_limit_lock_seconds=int(
                    os.getenv("LOGIN_RATE_LIMIT_LOCK_SECONDS", "900")
                ),
            ),
        )
