"""Collapse concurrent calls into one in-flight execution."""

from __future__ import annotations

from concurrent.futures import Future
from threading import Lock
from typing import Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """The first caller runs ``fn``; callers arriving meanwhile share its outcome."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._future: Future[T] | None = None

    @property
    def in_flight(self) -> bool:
        with self._lock:
            return self._future is not None

    def do(self, fn: Callable[[], T]) -> T:
        with self._lock:
            pending = self._future
            if pending is None:
                future: Future[T] = Future()
                self._future = future
        if pending is not None:
            return pending.result()

        try:
            result = fn()
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._future = None
