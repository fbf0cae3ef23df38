"""Durable registry of live WebSocket connections.

The registry is optional infrastructure: when no store is configured, or the
store cannot be reached, every operation degrades to a logged no-op so that
callers on the request path are never broken by it.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Callable

from pydantic import ValidationError
from pymongo import MongoClient
from pymongo.errors import PyMongoError

from clinic.core.config import StoreConfig
from clinic.core.logging import error_fields
from clinic.realtime.models import ConnectionRecord

LOGGER = logging.getLogger(__name__)


class MongoCollectionProvider:
    """Lazily built, explicitly owned handle on the connections collection.

    The handle is rebuilt whenever the configuration returned by
    ``config_source`` differs from the one it was built with.
    """

    def __init__(
        self,
        config_source: Callable[[], StoreConfig],
        *,
        client_factory: Callable[..., Any] = MongoClient,
    ) -> None:
        self._config_source = config_source
        self._client_factory = client_factory
        self._lock = Lock()
        self._client: Any = None
        self._collection: Any = None
        self._cached_key: tuple[str, str, str] | None = None
        self._warned_unconfigured = False

    def get(self) -> Any:
        """Return the collection, or ``None`` when no store is configured."""
        config = self._config_source()
        if not config.configured:
            if not self._warned_unconfigured:
                LOGGER.warning("realtime_store_not_configured")
                self._warned_unconfigured = True
            self.close()
            return None

        key = (config.mongo_uri, config.mongo_db, config.connections_collection)
        with self._lock:
            if self._collection is None or self._cached_key != key:
                self._close_locked()
                self._client = self._client_factory(
                    config.mongo_uri,
                    serverSelectionTimeoutMS=config.server_selection_timeout_ms,
                    tz_aware=True,
                )
                self._collection = self._client[config.mongo_db][
                    config.connections_collection
                ]
                self._cached_key = key
            return self._collection

    def close(self) -> None:
        """Release the underlying client, if any."""
        with self._lock:
            self._close_locked()

    def _close_locked(self) -> None:
        if self._client is not None:
            self._client.close()
        self._client = None
        self._collection = None
        self._cached_key = None


def _as_utc(value: Any) -> datetime | None:
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConnectionRegistry:
    """Insert, delete, enumerate and keep alive connection records."""

    def __init__(
        self,
        collection_provider: Callable[[], Any],
        *,
        ttl_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._collection_provider = collection_provider
        self._ttl = timedelta(seconds=max(1, int(ttl_seconds)))
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def _collection(self, operation: str) -> Any:
        try:
            return self._collection_provider()
        except PyMongoError as exc:
            LOGGER.warning(
                "realtime_store_unavailable",
                extra={"details": {"operation": operation}, **error_fields(exc)},
            )
            return None

    def _store_failed(self, operation: str, exc: PyMongoError, connection_id: str = "") -> None:
        LOGGER.warning(
            "realtime_store_operation_failed",
            extra={
                "connection_id": connection_id,
                "details": {"operation": operation},
                **error_fields(exc),
            },
        )

    def add(self, record: ConnectionRecord) -> None:
        """Upsert ``record`` keyed by its connection id."""
        collection = self._collection("add")
        if collection is None:
            return
        now = self._now()
        doc = record.model_dump(exclude_none=True)
        doc["last_seen_at"] = now
        doc["expires_at"] = now + self._ttl
        try:
            collection.update_one(
                {"connection_id": record.connection_id},
                {"$set": doc},
                upsert=True,
            )
        except PyMongoError as exc:
            self._store_failed("add", exc, record.connection_id)

    def remove(self, connection_id: str) -> None:
        """Delete the record; deleting an unknown id is not an error."""
        collection = self._collection("remove")
        if collection is None:
            return
        try:
            collection.delete_one({"connection_id": connection_id})
        except PyMongoError as exc:
            self._store_failed("remove", exc, connection_id)

    def touch(self, connection_id: str) -> None:
        """Push back the liveness deadline of a known connection."""
        collection = self._collection("touch")
        if collection is None:
            return
        now = self._now()
        try:
            collection.update_one(
                {"connection_id": connection_id},
                {"$set": {"last_seen_at": now, "expires_at": now + self._ttl}},
                upsert=False,
            )
        except PyMongoError as exc:
            self._store_failed("touch", exc, connection_id)

    def list(self) -> list[ConnectionRecord]:
        """Return every live record, skipping malformed and stale documents."""
        collection = self._collection("list")
        if collection is None:
            return []
        now = self._now()
        records: list[ConnectionRecord] = []
        try:
            for doc in collection.find({}, {"_id": 0}):
                expires_at = _as_utc(doc.get("expires_at"))
                if expires_at is not None and expires_at <= now:
                    continue
                try:
                    records.append(
                        ConnectionRecord(
                            connection_id=doc.get("connection_id"),
                            user_id=doc.get("user_id"),
                            created_at=doc.get("created_at"),
                        )
                    )
                except ValidationError:
                    LOGGER.warning(
                        "realtime_connection_malformed",
                        extra={"connection_id": str(doc.get("connection_id") or "")},
                    )
        except PyMongoError as exc:
            self._store_failed("list", exc)
            return []
        return records

    def purge_stale(self) -> int:
        """Delete records whose liveness deadline has passed; return the count."""
        collection = self._collection("purge_stale")
        if collection is None:
            return 0
        try:
            result = collection.delete_many({"expires_at": {"$lte": self._now()}})
        except PyMongoError as exc:
            self._store_failed("purge_stale", exc)
            return 0
        deleted = int(getattr(result, "deleted_count", 0) or 0)
        if deleted:
            LOGGER.info("realtime_connections_purged", extra={"count": deleted})
        return deleted
