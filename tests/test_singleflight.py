from __future__ import annotations

import threading
import time

import pytest

from clinic.client.singleflight import SingleFlight


def test_followers_share_the_leader_result() -> None:
    flight: SingleFlight[int] = SingleFlight()
    gate = threading.Event()
    calls: list[int] = []
    results: list[int] = []

    def _work() -> int:
        calls.append(1)
        gate.wait(timeout=5)
        return 42

    leader = threading.Thread(target=lambda: results.append(flight.do(_work)))
    leader.start()
    while not flight.in_flight:
        time.sleep(0.001)
    followers = [
        threading.Thread(target=lambda: results.append(flight.do(_work))) for _ in range(3)
    ]
    for thread in followers:
        thread.start()
    time.sleep(0.1)
    gate.set()
    for thread in [leader, *followers]:
        thread.join(timeout=5)

    assert calls == [1]
    assert results == [42, 42, 42, 42]
    assert not flight.in_flight


def test_leader_failure_propagates_and_next_call_runs_again() -> None:
    flight: SingleFlight[str] = SingleFlight()

    def _fail() -> str:
        raise ValueError("refresh rejected")

    with pytest.raises(ValueError):
        flight.do(_fail)

    assert not flight.in_flight
    assert flight.do(lambda: "ok") == "ok"
