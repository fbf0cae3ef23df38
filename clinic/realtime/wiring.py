"""Assembly of the realtime components shared by the ASGI app and serverless entry points."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from clinic.auth.models import AccessClaims
from clinic.core.config import AppConfig
from clinic.realtime.connection_store import ConnectionRegistry, MongoCollectionProvider
from clinic.realtime.handlers import RealtimeHandlers
from clinic.realtime.management import ManagementClientProvider
from clinic.realtime.publisher import RealtimePublisher


@dataclass(frozen=True)
class RealtimeStack:
    """Owned realtime resources; ``close`` releases the cached handles."""

    store: MongoCollectionProvider
    clients: ManagementClientProvider
    registry: ConnectionRegistry
    publisher: RealtimePublisher
    handlers: RealtimeHandlers

    def close(self) -> None:
        self.publisher.close()
        self.clients.close()
        self.store.close()


def build_realtime_stack(
    config_source: Callable[[], AppConfig],
    verify_token: Callable[[str], AccessClaims],
) -> RealtimeStack:
    """Wire registry, publisher and handlers from a (re-readable) config source."""
    initial = config_source()
    store = MongoCollectionProvider(lambda: config_source().store)
    clients = ManagementClientProvider(lambda: config_source().realtime)
    registry = ConnectionRegistry(
        store.get, ttl_seconds=initial.realtime.connection_ttl_seconds
    )
    publisher = RealtimePublisher(
        registry,
        clients.get,
        max_workers=initial.realtime.max_parallel_deliveries,
    )
    handlers = RealtimeHandlers(
        registry=registry,
        publisher=publisher,
        verify_token=verify_token,
    )
    return RealtimeStack(
        store=store,
        clients=clients,
        registry=registry,
        publisher=publisher,
        handlers=handlers,
    )
