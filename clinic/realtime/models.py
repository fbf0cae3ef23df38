"""Connection records and the realtime event wire format."""

from __future__ import annotations

import json
import logging
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel

LOGGER = logging.getLogger(__name__)


class ConnectionRecord(BaseModel):
    """A live transport connection, optionally bound to a user."""

    connection_id: str = Field(min_length=1)
    user_id: str | None = None
    created_at: int


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DoctorQueuePayload(_WireModel):
    """Identifies the queue (doctor and day) whose contents changed."""

    doctor_id: str
    visit_date: str


class DoctorQueueUpdated(_WireModel):
    type: Literal["DoctorQueueUpdated"] = "DoctorQueueUpdated"
    payload: DoctorQueuePayload


class Ping(_WireModel):
    type: Literal["ping"] = "ping"


class Pong(_WireModel):
    type: Literal["pong"] = "pong"


RealtimeEvent = Annotated[
    Union[DoctorQueueUpdated, Ping, Pong], Field(discriminator="type")
]

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(RealtimeEvent)


def serialize_event(event: DoctorQueueUpdated | Ping | Pong) -> bytes:
    """Encode an event as the JSON bytes sent to clients."""
    return event.model_dump_json(by_alias=True).encode("utf-8")


def parse_realtime_message(raw: str | bytes | None) -> DoctorQueueUpdated | Ping | Pong | None:
    """Decode a wire message, returning ``None`` for garbage or unknown types.

    Unknown ``type`` values are expected from newer peers and are not errors.
    """
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    try:
        return _EVENT_ADAPTER.validate_python(data)
    except ValidationError:
        LOGGER.debug("realtime_message_ignored", extra={"event_type": str(data.get("type"))})
        return None
