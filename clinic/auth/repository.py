"""Repository for auth users and refresh token persistence."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import ValidationError
from pymongo import MongoClient, ReturnDocument
from pymongo.errors import PyMongoError

from clinic.auth.models import AuthUser, RefreshTokenRecord
from clinic.core.config import StoreConfig
from clinic.core.logging import error_fields

LOGGER = logging.getLogger(__name__)


class AuthRepository:
    """Auth repository with MongoDB primary and file-store fallback."""

    def __init__(self, app_root: Path, store: StoreConfig) -> None:
        """Initialize repository storage backends."""
        self._fallback_dir = app_root / "runtime" / "auth_store"
        self._fallback_dir.mkdir(parents=True, exist_ok=True)
        self._users_file = self._fallback_dir / "users.json"
        self._refresh_file = self._fallback_dir / "refresh_tokens.json"
        self._file_lock = Lock()

        self._mongo_users = None
        self._mongo_refresh = None

        if store.configured:
            try:
                client: Any = MongoClient(
                    store.mongo_uri,
                    serverSelectionTimeoutMS=store.server_selection_timeout_ms,
                )
                client.admin.command("ping")
                db = client[store.mongo_db]
                self._mongo_users = db["auth_users"]
                self._mongo_refresh = db["auth_refresh_tokens"]
            except PyMongoError as exc:
                LOGGER.warning("auth_store_mongo_unavailable", extra=error_fields(exc))
                self._mongo_users = None
                self._mongo_refresh = None

    def _read_json_file(self, path: Path) -> list[dict[str, Any]]:
        """Read list payload from JSON file with empty fallback."""
        if not path.exists():
            return []
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return []
        return payload if isinstance(payload, list) else []

    def _write_json_file(self, path: Path, items: list[dict[str, Any]]) -> None:
        """Persist list payload to JSON file."""
        path.write_text(json.dumps(items, ensure_ascii=False, indent=2), encoding="utf-8")

    @staticmethod
    def _user_from_row(row: dict[str, Any] | None) -> AuthUser | None:
        if not row:
            return None
        try:
            return AuthUser.model_validate(row)
        except ValidationError:
            LOGGER.warning("auth_user_malformed", extra={"user_id": row.get("user_id")})
            return None

    def get_user_by_email(self, email: str) -> AuthUser | None:
        """Get user by email from storage."""
        key = email.strip().lower()
        if self._mongo_users is not None:
            return self._user_from_row(self._mongo_users.find_one({"email": key}, {"_id": 0}))

        for row in self._read_json_file(self._users_file):
            if str(row.get("email", "")).strip().lower() == key:
                return self._user_from_row(row)
        return None

    def get_user_by_id(self, user_id: str) -> AuthUser | None:
        """Get user by identifier from storage."""
        if self._mongo_users is not None:
            return self._user_from_row(
                self._mongo_users.find_one({"user_id": user_id}, {"_id": 0})
            )

        for row in self._read_json_file(self._users_file):
            if str(row.get("user_id", "")) == user_id:
                return self._user_from_row(row)
        return None

    def upsert_user(self, user: AuthUser) -> None:
        """Create or update auth user keyed by normalized email."""
        doc = user.model_dump()
        doc["email"] = user.email.strip().lower()
        if self._mongo_users is not None:
            self._mongo_users.update_one({"email": doc["email"]}, {"$set": doc}, upsert=True)
            return

        with self._file_lock:
            items = self._read_json_file(self._users_file)
            next_items = [
                row
                for row in items
                if str(row.get("email", "")).strip().lower() != doc["email"]
            ]
            next_items.append(doc)
            self._write_json_file(self._users_file, next_items)

    def save_refresh_token(self, record: RefreshTokenRecord) -> None:
        """Save refresh token record for rotation/revocation."""
        doc = record.model_dump()
        if self._mongo_refresh is not None:
            doc["expires_at_dt"] = datetime.fromtimestamp(record.expires_at, tz=timezone.utc)
            self._mongo_refresh.update_one({"jti": record.jti}, {"$set": doc}, upsert=True)
            return

        with self._file_lock:
            items = self._read_json_file(self._refresh_file)
            next_items = [row for row in items if str(row.get("jti", "")) != record.jti]
            next_items.append(doc)
            self._write_json_file(self._refresh_file, next_items)

    def get_refresh_token(self, jti: str) -> RefreshTokenRecord | None:
        """Get refresh token record by jti."""
        if self._mongo_refresh is not None:
            doc = self._mongo_refresh.find_one({"jti": jti}, {"_id": 0, "expires_at_dt": 0})
            return RefreshTokenRecord.model_validate(doc) if doc else None

        for row in self._read_json_file(self._refresh_file):
            if str(row.get("jti", "")) == jti:
                return RefreshTokenRecord.model_validate(row)
        return None

    def consume_refresh_token(self, jti: str) -> RefreshTokenRecord | None:
        """Atomically revoke an unrevoked record and return its prior state."""
        if self._mongo_refresh is not None:
            doc = self._mongo_refresh.find_one_and_update(
                {"jti": jti, "revoked": False},
                {"$set": {"revoked": True}},
                projection={"_id": 0, "expires_at_dt": 0},
                return_document=ReturnDocument.BEFORE,
            )
            return RefreshTokenRecord.model_validate(doc) if doc else None

        with self._file_lock:
            items = self._read_json_file(self._refresh_file)
            found: RefreshTokenRecord | None = None
            for row in items:
                if str(row.get("jti", "")) == jti and not row.get("revoked"):
                    found = RefreshTokenRecord.model_validate(row)
                    row["revoked"] = True
            if found is not None:
                self._write_json_file(self._refresh_file, items)
            return found

    def revoke_refresh_token(self, jti: str) -> None:
        """Mark refresh token record as revoked."""
        if self._mongo_refresh is not None:
            self._mongo_refresh.update_one({"jti": jti}, {"$set": {"revoked": True}})
            return

        with self._file_lock:
            items = self._read_json_file(self._refresh_file)
            for row in items:
                if str(row.get("jti", "")) == jti:
                    row["revoked"] = True
            self._write_json_file(self._refresh_file, items)
