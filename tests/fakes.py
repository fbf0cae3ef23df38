from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pymongo.errors import PyMongoError

from clinic.realtime.management import ConnectionGoneError, DeliveryError


@dataclass
class _Result:
    deleted_count: int = 0
    matched_count: int = 0


def _matches(doc: dict[str, Any], query: dict[str, Any]) -> bool:
    for key, expected in query.items():
        value = doc.get(key)
        if isinstance(expected, dict) and "$lte" in expected:
            if value is None or not value <= expected["$lte"]:
                return False
        elif value != expected:
            return False
    return True


class FakeCollection:
    """Just enough of a pymongo collection for the registry and migrations."""

    def __init__(self, docs: list[dict[str, Any]] | None = None, *, fail: bool = False) -> None:
        self.docs: list[dict[str, Any]] = list(docs or [])
        self.indexes: list[tuple[Any, dict[str, Any]]] = []
        self.fail = fail

    def _check(self) -> None:
        if self.fail:
            raise PyMongoError("store unavailable")

    def update_one(self, query: dict[str, Any], update: dict[str, Any], upsert: bool = False) -> _Result:
        self._check()
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(update["$set"])
                return _Result(matched_count=1)
        if upsert:
            self.docs.append({**query, **update["$set"]})
        return _Result()

    def delete_one(self, query: dict[str, Any]) -> _Result:
        self._check()
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return _Result(deleted_count=1)
        return _Result()

    def delete_many(self, query: dict[str, Any]) -> _Result:
        self._check()
        kept = [doc for doc in self.docs if not _matches(doc, query)]
        deleted = len(self.docs) - len(kept)
        self.docs = kept
        return _Result(deleted_count=deleted)

    def find(self, query: dict[str, Any], projection: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        self._check()
        return [dict(doc) for doc in self.docs if _matches(doc, query)]

    def find_one(self, query: dict[str, Any]) -> dict[str, Any] | None:
        self._check()
        return next((dict(doc) for doc in self.docs if _matches(doc, query)), None)

    def insert_one(self, doc: dict[str, Any]) -> None:
        self._check()
        self.docs.append(dict(doc))

    def create_index(self, keys: Any, **kwargs: Any) -> str:
        self._check()
        self.indexes.append((keys, kwargs))
        return str(kwargs.get("name") or keys)


class FakeDatabase:
    def __init__(self) -> None:
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


@dataclass
class FakeManagementClient:
    """Records deliveries; ids in ``gone`` answer 410, ids in ``broken`` fail."""

    gone: set[str] = field(default_factory=set)
    broken: set[str] = field(default_factory=set)
    sent: list[tuple[str, bytes]] = field(default_factory=list)

    def post_to_connection(self, connection_id: str, data: bytes) -> None:
        if connection_id in self.gone:
            raise ConnectionGoneError(connection_id)
        if connection_id in self.broken:
            raise DeliveryError("Gateway responded 500", status_code=500)
        self.sent.append((connection_id, data))

    def close(self) -> None:
        return None
