"""API routes that trigger fan-out and describe the heartbeat contract."""

from __future__ import annotations

from typing import Any, Callable

from fastapi import APIRouter, Depends

from clinic.api.contracts import (
    ApiErrorResponse,
    DoctorQueueUpdatedRequest,
    PublishResponse,
    RealtimeConfigResponse,
)
from clinic.core.config import RealtimeConfig
from clinic.realtime.publisher import RealtimePublisher


def create_realtime_router(
    publisher: RealtimePublisher,
    config: RealtimeConfig,
    *,
    require_staff: Callable[..., Any],
) -> APIRouter:
    """Build ``/api/realtime`` endpoints."""
    router = APIRouter(prefix="/api/realtime", tags=["realtime"])

    @router.get("/config", response_model=RealtimeConfigResponse)
    def realtime_config() -> RealtimeConfigResponse:
        """Clients ping at this interval; silent connections expire after the TTL."""
        return RealtimeConfigResponse(
            heartbeat_interval_sec=config.heartbeat_interval_seconds,
            connection_ttl_sec=config.connection_ttl_seconds,
            enabled=config.enabled,
        )

    @router.post(
        "/doctor-queue-updated",
        response_model=PublishResponse,
        responses={401: {"model": ApiErrorResponse}, 403: {"model": ApiErrorResponse}},
        dependencies=[Depends(require_staff)],
    )
    async def doctor_queue_updated(req: DoctorQueueUpdatedRequest) -> PublishResponse:
        report = await publisher.publish_doctor_queue_updated(req.doctor_id, req.visit_date)
        return PublishResponse(
            skipped=report.skipped,
            delivered=len(report.delivered),
            gone=len(report.gone),
            failed=len(report.failed),
        )

    return router
