from __future__ import annotations

import asyncio
import base64
import json

from clinic.auth.models import AccessClaims
from clinic.core.security import ExpiredTokenError
from clinic.realtime.connection_store import ConnectionRegistry
from clinic.realtime.handlers import RealtimeHandlers
from clinic.realtime.publisher import RealtimePublisher
from tests.fakes import FakeCollection, FakeManagementClient


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _verify(token: str) -> AccessClaims:
    if token == "expired":
        raise ExpiredTokenError("Token expired")
    if token == "boom":
        raise RuntimeError("verifier crashed")
    return AccessClaims(user_id=f"user-{token}", email="doc@clinic.local", role="DOCTOR")


def _handlers(
    clock: _Clock | None = None,
) -> tuple[RealtimeHandlers, ConnectionRegistry, FakeCollection, FakeManagementClient]:
    clock = clock or _Clock()
    collection = FakeCollection()
    client = FakeManagementClient()
    registry = ConnectionRegistry(lambda: collection, ttl_seconds=600, clock=clock)
    publisher = RealtimePublisher(registry, lambda: client, max_workers=2)
    handlers = RealtimeHandlers(
        registry=registry, publisher=publisher, verify_token=_verify, clock=clock
    )
    return handlers, registry, collection, client


def _event(connection_id: str | None, **extra) -> dict:
    context = {"connectionId": connection_id} if connection_id is not None else {}
    return {"requestContext": context, **extra}


def test_connect_with_valid_token_registers_user() -> None:
    handlers, registry, _collection, _client = _handlers()

    result = asyncio.run(
        handlers.connect(_event("c1", queryStringParameters={"token": "abc"}))
    )

    assert result == {"statusCode": 200, "body": "Connected"}
    records = registry.list()
    assert [(r.connection_id, r.user_id) for r in records] == [("c1", "user-abc")]
    assert records[0].created_at == 1_700_000_000_000


def test_connect_without_token_is_rejected_and_not_registered() -> None:
    handlers, registry, _collection, _client = _handlers()

    missing = asyncio.run(handlers.connect(_event("c1")))
    empty = asyncio.run(handlers.connect(_event("c1", queryStringParameters={"token": ""})))

    assert missing == {"statusCode": 401, "body": "Missing token"}
    assert empty["statusCode"] == 401
    assert registry.list() == []


def test_connect_with_invalid_token_is_unauthorized() -> None:
    handlers, registry, _collection, _client = _handlers()

    result = asyncio.run(
        handlers.connect(_event("c1", queryStringParameters={"token": "expired"}))
    )

    assert result == {"statusCode": 401, "body": "Unauthorized"}
    assert registry.list() == []


def test_connect_without_connection_id_is_bad_request() -> None:
    handlers, _registry, _collection, _client = _handlers()

    result = asyncio.run(handlers.connect(_event(None, queryStringParameters={"token": "abc"})))

    assert result["statusCode"] == 400


def test_connect_internal_failure_is_classified() -> None:
    handlers, registry, _collection, _client = _handlers()

    result = asyncio.run(
        handlers.connect(_event("c1", queryStringParameters={"token": "boom"}))
    )

    assert result == {"statusCode": 500, "body": "Internal error"}
    assert registry.list() == []


def test_disconnect_is_ok_for_known_and_unknown_ids() -> None:
    handlers, registry, _collection, _client = _handlers()
    asyncio.run(handlers.connect(_event("c1", queryStringParameters={"token": "abc"})))

    known = asyncio.run(handlers.disconnect(_event("c1")))
    unknown = asyncio.run(handlers.disconnect(_event("never-seen")))
    missing_id = asyncio.run(handlers.disconnect(_event(None)))

    assert known == {"statusCode": 200, "body": "Disconnected"}
    assert unknown["statusCode"] == 200
    assert missing_id["statusCode"] == 200
    assert registry.list() == []


def test_ping_refreshes_liveness_and_replies_pong() -> None:
    clock = _Clock()
    handlers, registry, collection, client = _handlers(clock)
    asyncio.run(handlers.connect(_event("c1", queryStringParameters={"token": "abc"})))
    first_deadline = collection.docs[0]["expires_at"]

    clock.now += 300
    result = asyncio.run(handlers.default(_event("c1", body='{"type": "ping"}')))

    assert result == {"statusCode": 200, "body": "OK"}
    assert collection.docs[0]["expires_at"] > first_deadline
    assert [(cid, json.loads(data)) for cid, data in client.sent] == [("c1", {"type": "pong"})]

    clock.now += 400
    assert [record.connection_id for record in registry.list()] == ["c1"]


def test_ping_accepts_base64_encoded_body() -> None:
    handlers, _registry, _collection, client = _handlers()
    asyncio.run(handlers.connect(_event("c1", queryStringParameters={"token": "abc"})))
    encoded = base64.b64encode(b'{"type":"ping"}').decode("ascii")

    asyncio.run(handlers.default(_event("c1", body=encoded, isBase64Encoded=True)))

    assert [cid for cid, _data in client.sent] == ["c1"]


def test_default_ignores_unknown_and_garbage_messages() -> None:
    handlers, _registry, collection, client = _handlers()
    asyncio.run(handlers.connect(_event("c1", queryStringParameters={"token": "abc"})))
    before = [dict(doc) for doc in collection.docs]

    results = [
        asyncio.run(handlers.default(_event("c1", body=body)))
        for body in ('{"type": "subscribe"}', "not-json", None)
    ]

    assert all(result == {"statusCode": 200, "body": "OK"} for result in results)
    assert collection.docs == before
    assert client.sent == []


def test_sweep_purges_silent_connections() -> None:
    clock = _Clock()
    handlers, registry, _collection, _client = _handlers(clock)
    asyncio.run(handlers.connect(_event("c1", queryStringParameters={"token": "abc"})))

    clock.now += 601
    result = asyncio.run(handlers.sweep())

    assert result == {"statusCode": 200, "body": "Purged 1"}
    assert registry.list() == []
