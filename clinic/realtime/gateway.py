"""Self-hosted WebSocket gateway.

Accepts client sockets on ``/ws``, routes their lifecycle through
``RealtimeHandlers`` exactly as a managed gateway would, and exposes the
``/@connections/{id}`` management API that ``ManagementClient`` talks to.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from fastapi import APIRouter, Depends, Header, Request, WebSocket, WebSocketDisconnect

from clinic.api.errors import ApiError, ApiErrorCode
from clinic.auth.middleware import extract_bearer_token
from clinic.core.logging import error_fields, set_correlation_id
from clinic.realtime.handlers import RealtimeHandlers

LOGGER = logging.getLogger(__name__)

UNAUTHORIZED_CLOSE = 4401
INTERNAL_ERROR_CLOSE = 1011


@dataclass
class _LocalConnection:
    websocket: WebSocket
    connected_at: float
    last_active_at: float
    source_ip: str = ""
    send_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ConnectionHub:
    """Sockets held by this process, keyed by connection id."""

    def __init__(self) -> None:
        self._connections: dict[str, _LocalConnection] = {}

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    @staticmethod
    def new_connection_id() -> str:
        return uuid.uuid4().hex

    def register(self, connection_id: str, websocket: WebSocket, source_ip: str = "") -> None:
        now = time.time()
        self._connections[connection_id] = _LocalConnection(
            websocket=websocket, connected_at=now, last_active_at=now, source_ip=source_ip
        )

    def unregister(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)

    def mark_active(self, connection_id: str) -> None:
        conn = self._connections.get(connection_id)
        if conn is not None:
            conn.last_active_at = time.time()

    def info(self, connection_id: str) -> dict[str, object] | None:
        conn = self._connections.get(connection_id)
        if conn is None:
            return None
        return {
            "connectionId": connection_id,
            "connectedAt": int(conn.connected_at * 1000),
            "lastActiveAt": int(conn.last_active_at * 1000),
            "sourceIp": conn.source_ip,
        }

    async def send(self, connection_id: str, data: str) -> bool:
        """Push ``data`` to a local socket; ``False`` when it is gone.

        Servers surface an abrupt client close as their own error types
        (``ClientDisconnected``, ``ConnectionClosed``), so any write failure
        retires the socket.
        """
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        try:
            async with conn.send_lock:
                await conn.websocket.send_text(data)
        except Exception as exc:
            LOGGER.info(
                "gateway_send_failed",
                extra={"connection_id": connection_id, **error_fields(exc)},
            )
            self.unregister(connection_id)
            return False
        return True

    async def close(self, connection_id: str) -> bool:
        conn = self._connections.get(connection_id)
        if conn is None:
            return False
        self.unregister(connection_id)
        try:
            await conn.websocket.close()
        except RuntimeError:
            pass
        return True


def _gateway_event(connection_id: str, route_key: str, **extra: object) -> dict[str, object]:
    return {
        "requestContext": {"connectionId": connection_id, "routeKey": route_key},
        **extra,
    }


def _frame_event(connection_id: str, message: dict[str, Any]) -> dict[str, object]:
    # Binary frames travel base64-encoded, as managed gateways deliver them.
    data = message.get("bytes")
    if data is not None:
        return _gateway_event(
            connection_id,
            "$default",
            body=base64.b64encode(data).decode("ascii"),
            isBase64Encoded=True,
        )
    return _gateway_event(connection_id, "$default", body=message.get("text"))


def _gone(connection_id: str) -> ApiError:
    return ApiError(
        status_code=410,
        error_code=ApiErrorCode.CONNECTION_GONE,
        message=f"Connection {connection_id} is gone",
    )


def create_gateway_router(
    handlers: RealtimeHandlers,
    hub: ConnectionHub,
    *,
    management_token: str = "",
) -> APIRouter:
    """Build the WebSocket endpoint and the connection management routes."""
    router = APIRouter(tags=["realtime-gateway"])

    def require_management_token(authorization: str | None = Header(default=None)) -> None:
        if not management_token:
            return
        if extract_bearer_token(authorization) != management_token:
            raise ApiError(
                status_code=403,
                error_code=ApiErrorCode.FORBIDDEN,
                message="Forbidden",
            )

    @router.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket) -> None:
        connection_id = hub.new_connection_id()
        set_correlation_id(connection_id)
        result = await handlers.connect(
            _gateway_event(
                connection_id,
                "$connect",
                queryStringParameters=dict(websocket.query_params),
            )
        )
        status_code = int(result["statusCode"])
        if status_code != 200:
            await websocket.close(
                code=UNAUTHORIZED_CLOSE if status_code == 401 else INTERNAL_ERROR_CLOSE
            )
            return

        await websocket.accept()
        source_ip = websocket.client.host if websocket.client else ""
        hub.register(connection_id, websocket, source_ip)
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                hub.mark_active(connection_id)
                await handlers.default(_frame_event(connection_id, message))
        except WebSocketDisconnect:
            pass
        finally:
            hub.unregister(connection_id)
            await handlers.disconnect(_gateway_event(connection_id, "$disconnect"))

    @router.post(
        "/@connections/{connection_id}",
        dependencies=[Depends(require_management_token)],
    )
    async def post_to_connection(connection_id: str, request: Request) -> dict[str, bool]:
        body = await request.body()
        if not await hub.send(connection_id, body.decode("utf-8", errors="replace")):
            raise _gone(connection_id)
        return {"ok": True}

    @router.get(
        "/@connections/{connection_id}",
        dependencies=[Depends(require_management_token)],
    )
    def get_connection(connection_id: str) -> dict[str, object]:
        info = hub.info(connection_id)
        if info is None:
            raise _gone(connection_id)
        return info

    @router.delete(
        "/@connections/{connection_id}",
        dependencies=[Depends(require_management_token)],
    )
    async def delete_connection(connection_id: str) -> dict[str, bool]:
        if not await hub.close(connection_id):
            raise _gone(connection_id)
        return {"ok": True}

    return router
