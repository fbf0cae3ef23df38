"""HTTP client for the auth endpoints, built on ``requests``."""

from __future__ import annotations

from typing import Any, Protocol

import requests
from pydantic import ValidationError

from clinic.api.contracts import LoginResponse


class AuthApiError(Exception):
    """An auth endpoint rejected the call or could not be reached."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthTransport(Protocol):
    """Network operations used by the session machine."""

    def login(self, email: str, password: str) -> LoginResponse: ...

    def refresh(self, refresh_token: str | None) -> LoginResponse: ...

    def logout(self, refresh_token: str | None) -> None: ...

    def request(
        self, method: str, path: str, *, access_token: str | None, **kwargs: Any
    ) -> requests.Response: ...


class AuthApi:
    """Talks to ``/api/auth/*``; the refresh cookie lives in the session's jar."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    def _post_for_tokens(self, path: str, payload: dict[str, Any]) -> LoginResponse:
        try:
            response = self._session.post(self._url(path), json=payload, timeout=self._timeout)
        except requests.RequestException as exc:
            raise AuthApiError(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code != 200:
            raise AuthApiError(_error_message(response), status_code=response.status_code)
        try:
            return LoginResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise AuthApiError("Malformed token response", status_code=response.status_code) from exc

    def login(self, email: str, password: str) -> LoginResponse:
        return self._post_for_tokens("/api/auth/login", {"email": email, "password": password})

    def refresh(self, refresh_token: str | None) -> LoginResponse:
        payload = {"refreshToken": refresh_token} if refresh_token else {}
        return self._post_for_tokens("/api/auth/refresh", payload)

    def logout(self, refresh_token: str | None) -> None:
        payload = {"refreshToken": refresh_token} if refresh_token else {}
        try:
            response = self._session.post(
                self._url("/api/auth/logout"), json=payload, timeout=self._timeout
            )
        except requests.RequestException as exc:
            raise AuthApiError(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code >= 400:
            raise AuthApiError(_error_message(response), status_code=response.status_code)

    def request(
        self, method: str, path: str, *, access_token: str | None, **kwargs: Any
    ) -> requests.Response:
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        kwargs.setdefault("timeout", self._timeout)
        return self._session.request(method, self._url(path), headers=headers, **kwargs)

    def close(self) -> None:
        self._session.close()


def _error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {response.status_code}"
