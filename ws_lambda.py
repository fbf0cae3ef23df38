"""Serverless entry points for a managed WebSocket gateway.

Route ``$connect``, ``$disconnect`` and ``$default`` to the matching handler
and schedule ``sweep_handler`` to purge connections that stopped pinging.
Configuration is re-read on every cold path so rotated settings take effect
without a redeploy.
"""

from __future__ import annotations

import asyncio
import logging
import time
from threading import Lock
from typing import Any, Awaitable, Callable

from dotenv import load_dotenv

from clinic.auth.models import AccessClaims
from clinic.auth.service import verify_access_token
from clinic.core.config import AppConfig
from clinic.core.logging import error_fields, set_correlation_id, setup_logging
from clinic.realtime.handlers import Ack, RealtimeHandlers, ack, connection_id_of
from clinic.realtime.wiring import RealtimeStack, build_realtime_stack

load_dotenv()
setup_logging(AppConfig.from_env().logging.level)
LOGGER = logging.getLogger(__name__)

_STACK: RealtimeStack | None = None
_STACK_LOCK = Lock()


def _build_stack() -> RealtimeStack:
    auth_config = AppConfig.from_env().auth

    def verify(token: str) -> AccessClaims:
        return verify_access_token(token, auth_config, now=int(time.time()))

    return build_realtime_stack(AppConfig.from_env, verify)


def _stack() -> RealtimeStack:
    global _STACK
    with _STACK_LOCK:
        if _STACK is None:
            _STACK = _build_stack()
        return _STACK


def _bind_request(event: dict[str, Any], context: Any) -> None:
    request_id = getattr(context, "aws_request_id", "") or connection_id_of(event) or "-"
    set_correlation_id(str(request_id))


def _dispatch(
    route_key: str,
    event: dict[str, Any],
    context: Any,
    call: Callable[[RealtimeHandlers], Awaitable[Ack]],
    unavailable: Ack,
) -> Ack:
    _bind_request(event, context)
    try:
        handlers = _stack().handlers
    except Exception as exc:
        LOGGER.error(
            "realtime_stack_unavailable",
            extra={"route_key": route_key, **error_fields(exc)},
        )
        return unavailable
    return asyncio.run(call(handlers))


def connect_handler(event: dict[str, Any], context: Any = None) -> Ack:
    return _dispatch(
        "$connect", event, context, lambda h: h.connect(event), ack(500, "Internal error")
    )


def disconnect_handler(event: dict[str, Any], context: Any = None) -> Ack:
    return _dispatch(
        "$disconnect", event, context, lambda h: h.disconnect(event), ack(200, "Disconnected")
    )


def default_handler(event: dict[str, Any], context: Any = None) -> Ack:
    return _dispatch("$default", event, context, lambda h: h.default(event), ack(200, "OK"))


def sweep_handler(event: dict[str, Any] | None = None, context: Any = None) -> Ack:
    return _dispatch(
        "sweep", event or {}, context, lambda h: h.sweep(event), ack(500, "Internal error")
    )
