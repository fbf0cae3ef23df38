"""Client-side auth session lifecycle.

The machine moves between three states:

* ``CHECKING``: nothing known yet; ``bootstrap`` resolves it with one refresh.
* ``AUTHENTICATED``: a refresh credential is held; the access credential may be
  missing or expired and is then renewed transparently.
* ``UNAUTHENTICATED``: no usable credentials; protected routes redirect to login.

Every transition writes the snapshot to storage under ``dms_auth`` so a
restarted client can resume without a network call.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from enum import StrEnum
from threading import RLock
from typing import Any, Callable
from urllib.parse import quote

import requests
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from clinic.api.contracts import LoginResponse
from clinic.client.api import AuthApiError, AuthTransport
from clinic.client.singleflight import SingleFlight
from clinic.client.storage import SessionStorage
from clinic.core.logging import error_fields

LOGGER = logging.getLogger(__name__)

STORAGE_KEY = "dms_auth"


def now_ms() -> int:
    return int(time.time() * 1000)


class SessionStatus(StrEnum):
    CHECKING = "checking"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class SessionExpiredError(Exception):
    """The session cannot be (re)established without a new login."""


@dataclass(frozen=True)
class SessionState:
    status: SessionStatus = SessionStatus.CHECKING
    user_id: str | None = None
    role: str | None = None
    access_token: str | None = None
    access_expires_at: int | None = None
    refresh_token: str | None = None
    refresh_expires_at: int | None = None
    error: str | None = None

    def has_valid_access(self, now: int) -> bool:
        return bool(
            self.access_token
            and self.access_expires_at is not None
            and self.access_expires_at > now
        )

    def has_valid_refresh(self, now: int) -> bool:
        return bool(
            self.refresh_token
            and self.refresh_expires_at is not None
            and self.refresh_expires_at > now
        )

    def is_authenticated(self, now: int) -> bool:
        return self.status == SessionStatus.AUTHENTICATED and self.has_valid_refresh(now)

    def needs_refresh(self, now: int) -> bool:
        return self.status == SessionStatus.AUTHENTICATED and not self.has_valid_access(now)


class SessionSnapshot(BaseModel):
    """Persisted form of an authenticated session (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: str | None = None
    role: str | None = None
    access_token: str | None = None
    access_expires_at: int | None = None
    refresh_token: str | None = None
    refresh_expires_at: int | None = None


@dataclass(frozen=True)
class BootstrapOutcome:
    status: SessionStatus
    redirect_to: str | None = None


class AuthSessionMachine:
    """Owns the session state; safe to call from multiple threads."""

    def __init__(
        self,
        api: AuthTransport,
        storage: SessionStorage,
        *,
        login_route: str = "/login",
        storage_key: str = STORAGE_KEY,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._api = api
        self._storage = storage
        self._login_route = login_route
        self._storage_key = storage_key
        self._clock = clock
        self._lock = RLock()
        self._state = SessionState()
        self._refresh_flight: SingleFlight[SessionState] = SingleFlight()
        self._bootstrap_flight: SingleFlight[SessionStatus] = SingleFlight()

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def _set_state(self, state: SessionState) -> SessionState:
        with self._lock:
            self._state = state
            self._persist(state)
        return state

    def _persist(self, state: SessionState) -> None:
        if state.status != SessionStatus.AUTHENTICATED:
            self._storage.remove(self._storage_key)
            return
        now = self._clock()
        keep_access = state.has_valid_access(now)
        snapshot = SessionSnapshot(
            user_id=state.user_id,
            role=state.role,
            access_token=state.access_token if keep_access else None,
            access_expires_at=state.access_expires_at if keep_access else None,
            refresh_token=state.refresh_token,
            refresh_expires_at=state.refresh_expires_at,
        )
        self._storage.set(self._storage_key, snapshot.model_dump(by_alias=True))

    def _drop_session(self, error: str | None = None) -> SessionState:
        return self._set_state(SessionState(status=SessionStatus.UNAUTHENTICATED, error=error))

    def _login_redirect(self, current_path: str) -> str:
        return f"{self._login_route}?next={quote(current_path, safe='/')}"

    def _is_login_route(self, path: str) -> bool:
        return path.split("?", 1)[0].rstrip("/") == self._login_route.rstrip("/")

    def restore_from_storage(self) -> SessionStatus:
        """Rebuild the state from the persisted snapshot without any network call."""
        now = self._clock()
        raw = self._storage.get(self._storage_key)
        snapshot: SessionSnapshot | None = None
        if raw is not None:
            try:
                snapshot = SessionSnapshot.model_validate(raw)
            except ValidationError:
                LOGGER.warning("auth_snapshot_invalid")

        if snapshot is None:
            return self._drop_session().status

        state = SessionState(
            status=SessionStatus.AUTHENTICATED,
            user_id=snapshot.user_id,
            role=snapshot.role,
            access_token=snapshot.access_token,
            access_expires_at=snapshot.access_expires_at,
            refresh_token=snapshot.refresh_token,
            refresh_expires_at=snapshot.refresh_expires_at,
        )
        if not state.has_valid_refresh(now):
            return self._drop_session().status
        if not state.has_valid_access(now):
            state = replace(state, access_token=None, access_expires_at=None)
        return self._set_state(state).status

    def bootstrap(self, current_path: str = "/") -> BootstrapOutcome:
        """Resolve ``CHECKING``; concurrent callers share one refresh attempt."""
        status = self._bootstrap_flight.do(lambda: self._bootstrap_once(current_path))
        if status == SessionStatus.UNAUTHENTICATED and not self._is_login_route(current_path):
            return BootstrapOutcome(status, self._login_redirect(current_path))
        return BootstrapOutcome(status)

    def _bootstrap_once(self, current_path: str) -> SessionStatus:
        current = self.state
        if current.status != SessionStatus.CHECKING:
            return current.status
        if self._is_login_route(current_path):
            return self._drop_session().status
        try:
            return self._refresh_flight.do(self._do_refresh).status
        except SessionExpiredError:
            return SessionStatus.UNAUTHENTICATED

    def login(self, email: str, password: str) -> SessionState:
        """Exchange credentials for a fresh session; failures leave no session behind."""
        try:
            response = self._api.login(email, password)
        except AuthApiError as exc:
            self._drop_session(str(exc))
            raise
        tokens = response.tokens
        if not tokens.refresh_token or tokens.refresh_expires_in_sec is None:
            self._drop_session()
            raise AuthApiError("Login response carried no refresh credential")
        now = self._clock()
        state = SessionState(
            status=SessionStatus.AUTHENTICATED,
            user_id=response.user_id,
            role=response.role,
            access_token=tokens.access_token,
            access_expires_at=now + tokens.expires_in_sec * 1000,
            refresh_token=tokens.refresh_token,
            refresh_expires_at=now + tokens.refresh_expires_in_sec * 1000,
        )
        LOGGER.info("auth_login_succeeded", extra={"user_id": response.user_id})
        return self._set_state(state)

    def refresh(self) -> SessionState:
        """Rotate credentials; concurrent callers share one network call."""
        return self._refresh_flight.do(self._do_refresh)

    def _do_refresh(self) -> SessionState:
        current = self.state
        try:
            response = self._api.refresh(current.refresh_token)
        except AuthApiError as exc:
            LOGGER.info(
                "auth_refresh_failed",
                extra={"status_code": exc.status_code, **error_fields(exc)},
            )
            self._drop_session("Session expired")
            raise SessionExpiredError("Session refresh failed") from exc
        merged = self._merge_refresh(self.state, response)
        if not merged.has_valid_refresh(self._clock()):
            LOGGER.info("auth_refresh_without_refresh_credential")
            self._drop_session("Session expired")
            raise SessionExpiredError("Refresh left no usable refresh credential")
        return self._set_state(merged)

    def _merge_refresh(self, current: SessionState, response: LoginResponse) -> SessionState:
        now = self._clock()
        tokens = response.tokens
        refresh_token = current.refresh_token
        refresh_expires_at = current.refresh_expires_at
        if tokens.refresh_token:
            refresh_token = tokens.refresh_token
            if tokens.refresh_expires_in_sec is not None:
                refresh_expires_at = now + tokens.refresh_expires_in_sec * 1000
        elif refresh_expires_at is None and tokens.refresh_expires_in_sec is not None:
            refresh_expires_at = now + tokens.refresh_expires_in_sec * 1000
        return SessionState(
            status=SessionStatus.AUTHENTICATED,
            user_id=response.user_id or current.user_id,
            role=response.role or current.role,
            access_token=tokens.access_token,
            access_expires_at=now + tokens.expires_in_sec * 1000,
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires_at,
        )

    def logout(self) -> None:
        """Best-effort server revocation; the local session is always cleared."""
        refresh_token = self.state.refresh_token
        try:
            self._api.logout(refresh_token)
        except AuthApiError as exc:
            LOGGER.warning("auth_logout_remote_failed", extra=error_fields(exc))
        finally:
            self._drop_session()

    def access_token(self) -> str:
        """Return a usable access credential, refreshing it first if it expired."""
        state = self.state
        if state.status != SessionStatus.AUTHENTICATED:
            raise SessionExpiredError("Not authenticated")
        if state.needs_refresh(self._clock()):
            state = self.refresh()
        if not state.access_token:
            raise SessionExpiredError("No access credential available")
        return state.access_token

    def request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        """Authenticated call with one refresh-and-retry on ``401``."""
        token = self.access_token()
        response = self._api.request(method, path, access_token=token, **kwargs)
        if response.status_code != 401:
            return response
        state = self.refresh()
        return self._api.request(method, path, access_token=state.access_token, **kwargs)
