"""Fan-out of realtime events to every registered connection."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable

from clinic.core.logging import error_fields
from clinic.realtime.connection_store import ConnectionRegistry
from clinic.realtime.management import ConnectionGoneError, ManagementClient
from clinic.realtime.models import (
    DoctorQueuePayload,
    DoctorQueueUpdated,
    Ping,
    Pong,
    serialize_event,
)

LOGGER = logging.getLogger(__name__)

Event = DoctorQueueUpdated | Ping | Pong


@dataclass
class PublishReport:
    """Per-connection outcome of one publish call."""

    skipped: bool = False
    delivered: list[str] = field(default_factory=list)
    gone: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class RealtimePublisher:
    """Delivers events to all live connections concurrently.

    ``publish`` never raises: gone connections are pruned from the registry,
    every other delivery failure is logged and left for the next attempt.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        client_provider: Callable[[], ManagementClient | None],
        *,
        max_workers: int = 32,
    ) -> None:
        self._registry = registry
        self._client_provider = client_provider
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers), thread_name_prefix="realtime-delivery"
        )

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(fn, *args))

    def _client(self, event_type: str) -> ManagementClient | None:
        try:
            client = self._client_provider()
        except Exception as exc:
            LOGGER.warning(
                "realtime_client_unavailable",
                extra={"event_type": event_type, **error_fields(exc)},
            )
            return None
        if client is None:
            LOGGER.warning("realtime_publish_skipped", extra={"event_type": event_type})
        return client

    async def publish(self, event: Event) -> PublishReport:
        """Send ``event`` to every registered connection and wait for all to settle."""
        client = self._client(event.type)
        if client is None:
            return PublishReport(skipped=True)

        report = PublishReport()
        try:
            connections = await self._run(self._registry.list)
        except Exception as exc:
            LOGGER.error(
                "realtime_list_failed",
                extra={"event_type": event.type, **error_fields(exc)},
            )
            return report
        if not connections:
            return report

        data = serialize_event(event)
        outcomes = await asyncio.gather(
            *(self._deliver(client, conn.connection_id, data) for conn in connections)
        )
        for connection_id, outcome in zip((c.connection_id for c in connections), outcomes):
            getattr(report, outcome).append(connection_id)
        return report

    async def publish_doctor_queue_updated(self, doctor_id: str, visit_date: str) -> PublishReport:
        """Announce that a doctor's queue for ``visit_date`` changed."""
        return await self.publish(
            DoctorQueueUpdated(
                payload=DoctorQueuePayload(doctor_id=doctor_id, visit_date=visit_date)
            )
        )

    async def send_to_connection(self, connection_id: str, event: Event) -> bool:
        """Best-effort delivery to a single connection; ``False`` on any failure."""
        client = self._client(event.type)
        if client is None:
            return False
        outcome = await self._deliver(client, connection_id, serialize_event(event))
        return outcome == "delivered"

    async def _deliver(self, client: ManagementClient, connection_id: str, data: bytes) -> str:
        try:
            await self._run(client.post_to_connection, connection_id, data)
        except ConnectionGoneError:
            LOGGER.info("realtime_connection_gone", extra={"connection_id": connection_id})
            try:
                await self._run(self._registry.remove, connection_id)
            except Exception as exc:
                LOGGER.error(
                    "realtime_gone_cleanup_failed",
                    extra={"connection_id": connection_id, **error_fields(exc)},
                )
            return "gone"
        except Exception as exc:
            LOGGER.error(
                "realtime_post_failed",
                extra={"connection_id": connection_id, **error_fields(exc)},
            )
            return "failed"
        return "delivered"

    def close(self) -> None:
        self._executor.shutdown(wait=True)
