from __future__ import annotations

import logging
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from clinic.api.http_setup import register_exception_handlers
from clinic.auth.models import AccessClaims
from clinic.core.security import TokenSignatureError
from clinic.realtime.connection_store import ConnectionRegistry
from clinic.realtime.gateway import UNAUTHORIZED_CLOSE, ConnectionHub, create_gateway_router
from clinic.realtime.handlers import RealtimeHandlers
from clinic.realtime.publisher import RealtimePublisher
from tests.fakes import FakeCollection, FakeManagementClient

LOGGER = logging.getLogger(__name__)


def _verify(token: str) -> AccessClaims:
    if token != "good":
        raise TokenSignatureError("Invalid token signature")
    return AccessClaims(user_id="u1", email="rec@clinic.local", role="RECEPTION")


def _app(management_token: str = "") -> tuple[FastAPI, FakeCollection, FakeManagementClient]:
    collection = FakeCollection()
    client = FakeManagementClient()
    registry = ConnectionRegistry(lambda: collection, ttl_seconds=600)
    publisher = RealtimePublisher(registry, lambda: client, max_workers=2)
    handlers = RealtimeHandlers(registry=registry, publisher=publisher, verify_token=_verify)
    app = FastAPI()
    register_exception_handlers(app, logger=LOGGER)
    app.include_router(
        create_gateway_router(handlers, ConnectionHub(), management_token=management_token)
    )
    return app, collection, client


def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached")
        time.sleep(0.01)


def test_websocket_without_valid_token_is_closed_unauthorized() -> None:
    app, collection, _client = _app()

    with TestClient(app) as http:
        with pytest.raises(WebSocketDisconnect) as exc:
            with http.websocket_connect("/ws?token=bad") as ws:
                ws.receive_text()

    assert exc.value.code == UNAUTHORIZED_CLOSE
    assert collection.docs == []


def test_websocket_lifecycle_registers_pings_and_receives_posts() -> None:
    app, collection, client = _app()

    with TestClient(app) as http:
        with http.websocket_connect("/ws?token=good") as ws:
            assert [doc["user_id"] for doc in collection.docs] == ["u1"]
            connection_id = collection.docs[0]["connection_id"]

            ws.send_text('{"type": "ping"}')
            _wait_for(lambda: len(client.sent) == 1)
            assert client.sent[0][0] == connection_id

            info = http.get(f"/@connections/{connection_id}")
            pushed = http.post(
                f"/@connections/{connection_id}",
                content=b'{"type":"DoctorQueueUpdated","payload":{"doctorId":"d","visitDate":"2026-10-18"}}',
            )
            assert info.status_code == 200
            assert info.json()["connectionId"] == connection_id
            assert pushed.status_code == 200
            assert "DoctorQueueUpdated" in ws.receive_text()

        _wait_for(lambda: collection.docs == [])
        gone = http.post(f"/@connections/{connection_id}", content=b"{}")

    assert gone.status_code == 410
    assert gone.json()["error_code"] == "CONNECTION_GONE"


def test_management_routes_report_unknown_connections_as_gone() -> None:
    app, _collection, _client = _app()

    with TestClient(app) as http:
        responses = [
            http.post("/@connections/nope", content=b"{}"),
            http.get("/@connections/nope"),
            http.delete("/@connections/nope"),
        ]

    assert [response.status_code for response in responses] == [410, 410, 410]


def test_management_routes_require_configured_token() -> None:
    app, _collection, _client = _app(management_token="mgmt")

    with TestClient(app) as http:
        anonymous = http.get("/@connections/nope")
        authorized = http.get("/@connections/nope", headers={"Authorization": "Bearer mgmt"})

    assert anonymous.status_code == 403
    assert authorized.status_code == 410


def test_binary_frames_do_not_tear_down_the_connection() -> None:
    app, collection, client = _app()

    with TestClient(app) as http:
        with http.websocket_connect("/ws?token=good") as ws:
            connection_id = collection.docs[0]["connection_id"]

            ws.send_bytes(b"\x00\x01garbage")
            ws.send_text('{"type": "ping"}')
            _wait_for(lambda: len(client.sent) == 1)

            ws.send_bytes(b'{"type": "ping"}')
            _wait_for(lambda: len(client.sent) == 2)

            assert [cid for cid, _data in client.sent] == [connection_id, connection_id]
            assert [doc["connection_id"] for doc in collection.docs] == [connection_id]


class _ClientDisconnected(OSError):
    pass


class _ConnectionClosed(Exception):
    pass


class _BrokenSocket:
    def __init__(self, error: Exception) -> None:
        self.error = error

    async def send_text(self, data: str) -> None:
        raise self.error


@pytest.mark.parametrize(
    "error",
    [_ClientDisconnected("peer went away"), _ConnectionClosed("1006"), RuntimeError("closed")],
)
def test_abruptly_closed_socket_is_reported_gone(error: Exception) -> None:
    collection = FakeCollection()
    registry = ConnectionRegistry(lambda: collection, ttl_seconds=600)
    publisher = RealtimePublisher(registry, lambda: FakeManagementClient(), max_workers=1)
    handlers = RealtimeHandlers(registry=registry, publisher=publisher, verify_token=_verify)
    hub = ConnectionHub()
    hub.register("c1", _BrokenSocket(error))  # type: ignore[arg-type]
    app = FastAPI()
    register_exception_handlers(app, logger=LOGGER)
    app.include_router(create_gateway_router(handlers, hub))

    with TestClient(app) as http:
        response = http.post("/@connections/c1", content=b"{}")

    assert response.status_code == 410
    assert "c1" not in hub
