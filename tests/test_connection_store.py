from __future__ import annotations

from datetime import datetime, timezone

from clinic.core.config import StoreConfig
from clinic.realtime.connection_store import ConnectionRegistry, MongoCollectionProvider
from clinic.realtime.models import ConnectionRecord
from tests.fakes import FakeCollection


class _Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _registry(collection: FakeCollection | None, clock: _Clock | None = None) -> ConnectionRegistry:
    return ConnectionRegistry(lambda: collection, ttl_seconds=600, clock=clock or _Clock())


def _record(connection_id: str, user_id: str | None = "u1") -> ConnectionRecord:
    return ConnectionRecord(connection_id=connection_id, user_id=user_id, created_at=1)


def test_add_then_list_returns_record() -> None:
    registry = _registry(FakeCollection())

    registry.add(_record("c1"))
    registry.add(_record("c2", user_id=None))

    listed = {record.connection_id: record for record in registry.list()}
    assert set(listed) == {"c1", "c2"}
    assert listed["c1"].user_id == "u1"
    assert listed["c2"].user_id is None


def test_add_same_id_twice_keeps_one_record() -> None:
    collection = FakeCollection()
    registry = _registry(collection)

    registry.add(_record("c1", user_id="u1"))
    registry.add(_record("c1", user_id="u2"))

    assert len(collection.docs) == 1
    assert registry.list()[0].user_id == "u2"


def test_remove_is_idempotent() -> None:
    registry = _registry(FakeCollection())
    registry.add(_record("c1"))

    registry.remove("c1")
    registry.remove("c1")
    registry.remove("never-existed")

    assert registry.list() == []


def test_list_skips_malformed_records() -> None:
    collection = FakeCollection(
        [
            {"connection_id": "ok", "created_at": 5},
            {"connection_id": "", "created_at": 5},
            {"user_id": "u1", "created_at": 5},
            {"connection_id": "no-created-at"},
        ]
    )

    assert [record.connection_id for record in _registry(collection).list()] == ["ok"]


def test_touch_extends_deadline_and_stale_records_are_skipped_then_purged() -> None:
    clock = _Clock()
    collection = FakeCollection()
    registry = _registry(collection, clock)
    registry.add(_record("alive"))
    registry.add(_record("silent"))

    clock.now += 500
    registry.touch("alive")
    clock.now += 200

    assert [record.connection_id for record in registry.list()] == ["alive"]
    assert registry.purge_stale() == 1
    assert [doc["connection_id"] for doc in collection.docs] == ["alive"]


def test_touch_does_not_create_unknown_connection() -> None:
    collection = FakeCollection()

    _registry(collection).touch("ghost")

    assert collection.docs == []


def test_operations_are_noops_without_store() -> None:
    registry = _registry(None)

    registry.add(_record("c1"))
    registry.remove("c1")
    registry.touch("c1")

    assert registry.list() == []
    assert registry.purge_stale() == 0


def test_store_errors_do_not_escape() -> None:
    registry = _registry(FakeCollection(fail=True))

    registry.add(_record("c1"))
    registry.remove("c1")

    assert registry.list() == []
    assert registry.purge_stale() == 0


def test_add_records_timezone_aware_deadline() -> None:
    collection = FakeCollection()
    _registry(collection).add(_record("c1"))

    expires_at = collection.docs[0]["expires_at"]
    assert isinstance(expires_at, datetime)
    assert expires_at.tzinfo == timezone.utc


class _FakeClient:
    def __init__(self, uri: str, **kwargs) -> None:
        self.uri = uri
        self.kwargs = kwargs
        self.closed = False
        self.databases: dict[str, dict[str, FakeCollection]] = {}

    def __getitem__(self, name: str) -> dict[str, FakeCollection]:
        return self.databases.setdefault(name, {"ws_connections": FakeCollection()})

    def close(self) -> None:
        self.closed = True


def test_collection_provider_is_lazy_and_rebuilds_on_config_change() -> None:
    configs = [StoreConfig(mongo_uri="mongodb://a", mongo_db="clinic", connections_collection="ws_connections")]
    clients: list[_FakeClient] = []

    def _factory(uri: str, **kwargs) -> _FakeClient:
        client = _FakeClient(uri, **kwargs)
        clients.append(client)
        return client

    provider = MongoCollectionProvider(lambda: configs[-1], client_factory=_factory)
    assert clients == []

    first = provider.get()
    assert provider.get() is first
    assert len(clients) == 1
    assert clients[0].kwargs["tz_aware"] is True

    configs.append(StoreConfig(mongo_uri="mongodb://b", mongo_db="clinic", connections_collection="ws_connections"))
    second = provider.get()

    assert second is not first
    assert clients[0].closed is True
    assert clients[1].uri == "mongodb://b"

    provider.close()
    assert clients[1].closed is True


def test_collection_provider_returns_none_without_uri() -> None:
    def _factory(*_args, **_kwargs) -> _FakeClient:
        raise AssertionError("client must not be created")

    provider = MongoCollectionProvider(
        lambda: StoreConfig(mongo_uri="", mongo_db="clinic", connections_collection="ws_connections"),
        client_factory=_factory,
    )

    assert provider.get() is None
