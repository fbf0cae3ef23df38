"""Versioned MongoDB index migrations for auth and realtime collections."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from pymongo import ASCENDING, MongoClient
from pymongo.errors import PyMongoError

from clinic.core.config import StoreConfig
from clinic.core.logging import CORRELATION_ID_CTX, error_fields

LOGGER = logging.getLogger(__name__)

MigrationFn = Callable[[Any, StoreConfig], None]


def _migration_01_auth_indexes(db: Any, config: StoreConfig) -> None:
    db["auth_users"].create_index("email", unique=True)
    db["auth_users"].create_index("user_id", unique=True)
    db["auth_refresh_tokens"].create_index("jti", unique=True)


def _migration_02_refresh_token_ttl(db: Any, config: StoreConfig) -> None:
    db["auth_refresh_tokens"].create_index(
        "expires_at_dt",
        expireAfterSeconds=0,
        name="idx_auth_refresh_tokens_expires_at_ttl",
    )


def _migration_03_ws_connections(db: Any, config: StoreConfig) -> None:
    collection = db[config.connections_collection]
    collection.create_index([("connection_id", ASCENDING)], unique=True)
    collection.create_index(
        "expires_at",
        expireAfterSeconds=0,
        name="idx_ws_connections_expires_at_ttl",
    )


MIGRATIONS: list[tuple[str, MigrationFn]] = [
    ("01_auth_indexes", _migration_01_auth_indexes),
    ("02_refresh_token_ttl", _migration_02_refresh_token_ttl),
    ("03_ws_connections", _migration_03_ws_connections),
]


def run_mongo_migrations(db: Any, config: StoreConfig) -> list[str]:
    """Apply pending migrations against ``db`` and return the applied ids."""
    migration_collection = db["schema_migrations"]
    migration_collection.create_index("migration_id", unique=True)

    applied: list[str] = []
    for migration_id, migration_fn in MIGRATIONS:
        if migration_collection.find_one({"migration_id": migration_id}):
            continue
        migration_fn(db, config)
        migration_collection.insert_one(
            {
                "migration_id": migration_id,
                "applied_at": datetime.now(timezone.utc),
                "correlation_id": CORRELATION_ID_CTX.get(),
            }
        )
        applied.append(migration_id)
    return applied


def apply_mongo_migrations(
    config: StoreConfig,
    *,
    client_factory: Callable[..., Any] = MongoClient,
) -> list[str]:
    """Apply MongoDB migrations if a store is configured."""
    if not config.configured:
        return []

    client = client_factory(
        config.mongo_uri, serverSelectionTimeoutMS=config.server_selection_timeout_ms
    )
    try:
        client.admin.command("ping")
        return run_mongo_migrations(client[config.mongo_db], config)
    except PyMongoError as exc:
        LOGGER.warning("mongo_migrations_skipped", extra=error_fields(exc))
        return []
    finally:
        client.close()
