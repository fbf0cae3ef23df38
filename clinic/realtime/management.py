"""HTTP client for the WebSocket gateway's connection management API."""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Callable
from urllib.parse import quote

import requests

from clinic.core.config import RealtimeConfig

LOGGER = logging.getLogger(__name__)


class DeliveryError(Exception):
    """A message could not be handed to the gateway for a connection."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConnectionGoneError(DeliveryError):
    """The gateway reports that the connection no longer exists (HTTP 410)."""

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection {connection_id} is gone", status_code=410)
        self.connection_id = connection_id


class ManagementClient:
    """``POST/GET/DELETE {endpoint}/@connections/{id}`` over ``requests``."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_seconds: float,
        token: str = "",
        session: requests.Session | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self._timeout = timeout_seconds
        self._session = session or requests.Session()
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"

    def _url(self, connection_id: str) -> str:
        return f"{self.endpoint}/@connections/{quote(connection_id, safe='')}"

    def _send(self, method: str, connection_id: str, **kwargs: Any) -> requests.Response:
        try:
            response = self._session.request(
                method, self._url(connection_id), timeout=self._timeout, **kwargs
            )
        except requests.RequestException as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc
        if response.status_code == 410:
            raise ConnectionGoneError(connection_id)
        if response.status_code >= 400:
            raise DeliveryError(
                f"Gateway responded {response.status_code}",
                status_code=response.status_code,
            )
        return response

    def post_to_connection(self, connection_id: str, data: bytes) -> None:
        """Deliver ``data`` to one connection."""
        self._send(
            "POST",
            connection_id,
            data=data,
            headers={"Content-Type": "application/json"},
        )

    def get_connection(self, connection_id: str) -> dict[str, Any]:
        """Return gateway-side information about a connection."""
        return self._send("GET", connection_id).json()

    def delete_connection(self, connection_id: str) -> None:
        """Ask the gateway to close a connection."""
        self._send("DELETE", connection_id)

    def close(self) -> None:
        self._session.close()


class ManagementClientProvider:
    """Caches one ``ManagementClient`` and rebuilds it when the endpoint changes."""

    def __init__(
        self,
        config_source: Callable[[], RealtimeConfig],
        *,
        client_factory: Callable[..., ManagementClient] = ManagementClient,
    ) -> None:
        self._config_source = config_source
        self._client_factory = client_factory
        self._lock = Lock()
        self._client: ManagementClient | None = None
        self._cached_key: tuple[str, str, float] | None = None

    def get(self) -> ManagementClient | None:
        """Return the client, or ``None`` when no endpoint is configured."""
        config = self._config_source()
        if not config.enabled:
            LOGGER.warning("realtime_ws_endpoint_missing")
            return None

        key = (config.ws_endpoint, config.management_token, config.request_timeout_seconds)
        with self._lock:
            if self._client is None or self._cached_key != key:
                if self._client is not None:
                    self._client.close()
                self._client = self._client_factory(
                    config.ws_endpoint,
                    timeout_seconds=config.request_timeout_seconds,
                    token=config.management_token,
                )
                self._cached_key = key
            return self._client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
            self._client = None
            self._cached_key = None
