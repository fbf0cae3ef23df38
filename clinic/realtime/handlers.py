"""Connection lifecycle entry points: ``$connect``, ``$disconnect``, ``$default``.

Each handler receives a gateway event dict and returns a
``{"statusCode": ..., "body": ...}`` acknowledgement. No exception escapes a
handler; failures are classified and logged here.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import time
from functools import partial
from typing import Any, Callable

from clinic.auth.models import AccessClaims
from clinic.core.logging import error_fields
from clinic.core.security import TokenError
from clinic.realtime.connection_store import ConnectionRegistry
from clinic.realtime.models import ConnectionRecord, Ping, Pong, parse_realtime_message
from clinic.realtime.publisher import RealtimePublisher

LOGGER = logging.getLogger(__name__)

GatewayEvent = dict[str, Any]
Ack = dict[str, Any]


def ack(status_code: int, body: str) -> Ack:
    return {"statusCode": status_code, "body": body}


def connection_id_of(event: GatewayEvent) -> str:
    context = event.get("requestContext") or {}
    return str(context.get("connectionId") or "") if isinstance(context, dict) else ""


def _query_param(event: GatewayEvent, name: str) -> str | None:
    params = event.get("queryStringParameters") or {}
    if not isinstance(params, dict):
        return None
    value = params.get(name)
    return str(value) if value else None


def _body_of(event: GatewayEvent) -> str | None:
    body = event.get("body")
    if not body or not isinstance(body, str):
        return None
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
    return body


class RealtimeHandlers:
    """Binds gateway lifecycle events to the registry and publisher."""

    def __init__(
        self,
        *,
        registry: ConnectionRegistry,
        publisher: RealtimePublisher,
        verify_token: Callable[[str], AccessClaims],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._publisher = publisher
        self._verify_token = verify_token
        self._clock = clock

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(fn, *args))

    async def connect(self, event: GatewayEvent) -> Ack:
        """Authenticate the handshake token and register the connection."""
        connection_id = connection_id_of(event)
        token = _query_param(event, "token")
        LOGGER.info(
            "realtime_connect",
            extra={"connection_id": connection_id, "details": {"has_token": bool(token)}},
        )
        if not connection_id:
            return ack(400, "Missing connection id")
        if not token:
            return ack(401, "Missing token")

        try:
            claims = self._verify_token(token)
            await self._run(
                self._registry.add,
                ConnectionRecord(
                    connection_id=connection_id,
                    user_id=claims.user_id,
                    created_at=int(self._clock() * 1000),
                ),
            )
        except TokenError as exc:
            LOGGER.warning(
                "realtime_connect_unauthorized",
                extra={"connection_id": connection_id, **error_fields(exc)},
            )
            return ack(401, "Unauthorized")
        except Exception as exc:
            LOGGER.exception(
                "realtime_connect_failed",
                extra={"connection_id": connection_id, **error_fields(exc)},
            )
            return ack(500, "Internal error")

        return ack(200, "Connected")

    async def disconnect(self, event: GatewayEvent) -> Ack:
        """Release the connection; succeeds even for unknown ids."""
        connection_id = connection_id_of(event)
        if connection_id:
            try:
                await self._run(self._registry.remove, connection_id)
            except Exception as exc:
                LOGGER.error(
                    "realtime_disconnect_failed",
                    extra={"connection_id": connection_id, **error_fields(exc)},
                )
        LOGGER.info("realtime_disconnect", extra={"connection_id": connection_id})
        return ack(200, "Disconnected")

    async def default(self, event: GatewayEvent) -> Ack:
        """Handle client frames; only ``{"type": "ping"}`` has an effect."""
        connection_id = connection_id_of(event)
        try:
            message = parse_realtime_message(_body_of(event))
            if isinstance(message, Ping) and connection_id:
                await self._run(self._registry.touch, connection_id)
                delivered = await self._publisher.send_to_connection(connection_id, Pong())
                if not delivered:
                    LOGGER.info("realtime_pong_not_delivered", extra={"connection_id": connection_id})
        except Exception as exc:
            LOGGER.error(
                "realtime_default_failed",
                extra={"connection_id": connection_id, **error_fields(exc)},
            )
        return ack(200, "OK")

    async def sweep(self, event: GatewayEvent | None = None) -> Ack:
        """Scheduled cleanup of connections whose heartbeat deadline passed."""
        try:
            purged = await self._run(self._registry.purge_stale)
        except Exception as exc:
            LOGGER.error("realtime_sweep_failed", extra=error_fields(exc))
            purged = 0
        return ack(200, f"Purged {purged}")
