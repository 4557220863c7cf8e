"""
Test package for the request dispatcher.

Shared stubs used across the dispatcher, unit, CLI, and observability tests.
"""

import asyncio
from typing import Callable, List, Optional

import requests

from request_dispatcher.io.schema import Success


class StubCallUnit:
    """Async call unit with scripted outcomes and latencies.

    ``send`` records the index synchronously, at the moment the dispatcher
    creates the call, and returns the coroutine that produces the outcome.
    """

    def __init__(
        self,
        outcome_fn: Optional[Callable[[int], object]] = None,
        latency_fn: Optional[Callable[[int], float]] = None,
        on_dispatch: Optional[Callable[[int], None]] = None,
    ):
        self.outcome_fn = outcome_fn or (lambda index: Success(index=index, value=index * 10))
        self.latency_fn = latency_fn or (lambda index: 0.0)
        self.on_dispatch = on_dispatch
        self.dispatched: List[int] = []
        self.completed: List[int] = []

    def send(self, index: int):
        self.dispatched.append(index)
        if self.on_dispatch:
            self.on_dispatch(index)
        return self._send(index)

    async def _send(self, index: int):
        await asyncio.sleep(self.latency_fn(index))
        self.completed.append(index)
        return self.outcome_fn(index)


class CountingRateGate:
    """Rate gate recording how many calls had been dispatched at each cooldown."""

    def __init__(self, call_unit: Optional[StubCallUnit] = None, delay: float = 0.0, probe=None):
        self.call_unit = call_unit
        self.delay = delay
        self.probe = probe
        self.calls = 0
        self.dispatched_at: List[int] = []
        self.probed: List[object] = []

    async def cooldown(self):
        self.calls += 1
        if self.call_unit is not None:
            self.dispatched_at.append(len(self.call_unit.dispatched))
        await asyncio.sleep(self.delay)
        if self.probe is not None:
            self.probed.append(self.probe())


class RecordingObserver:
    """Stands in for EnhancedLogger and records what the dispatcher reports."""

    def __init__(self):
        self.in_flight_sizes: List[int] = []
        self.dispatched: List[int] = []
        self.failures = []
        self.cooldowns = 0
        self.run_end = None

    def log_run_banner(self, run_id, concurrency, batch_size, total_requests, cooldown_ms):
        self.banner = (run_id, concurrency, batch_size, total_requests, cooldown_ms)

    def log_call_dispatched(self, index, in_flight):
        self.dispatched.append(index)
        self.in_flight_sizes.append(in_flight)

    def log_call_succeeded(self, index, value):
        pass

    def log_call_failure(self, failure):
        self.failures.append(failure)

    def log_cooldown(self, dispatched_count, cooldown_ms, in_flight):
        self.cooldowns += 1

    def log_run_end(self, run_id, summary):
        self.run_end = summary


class StubTransport:
    """Synchronous transport returning ``{"data": {"result": index * 10}}`` unless scripted."""

    def __init__(self, handler: Optional[Callable[[int], object]] = None):
        self.handler = handler or (lambda index: {"data": {"result": index * 10}})
        self.indexes: List[int] = []
        self.closed = False

    def post_index(self, index: int):
        self.indexes.append(index)
        return self.handler(index)

    def close(self):
        self.closed = True


def make_response(status_code: int, body: bytes = b"") -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response._content = body
    response.url = "http://localhost:3000/api"
    return response


def http_error(status_code: int, body: bytes = b"") -> requests.HTTPError:
    return requests.HTTPError(f"{status_code} Error", response=make_response(status_code, body))
