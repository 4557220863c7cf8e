"""
Tests for the bounded-concurrency dispatcher loop.

Checklist:
- Never more than concurrency_limit calls in flight
- Indexes dispatched strictly in order 1..total_requests, each exactly once
- One cooldown per full batch, none for a trailing partial batch
- Failed calls never stop the run and never reach the results
- Invalid configuration is rejected before anything is dispatched
"""

import asyncio
import logging

import pytest

from request_dispatcher import (
    CallUnit,
    ConfigError,
    DispatchConfig,
    Dispatcher,
    DispatchInProgressError,
    ErrorKind,
    Failure,
    ResultCollector,
    Success,
)
from tests import CountingRateGate, RecordingObserver, StubCallUnit, StubTransport, http_error


def _run(dispatcher, **config):
    return asyncio.run(dispatcher.run(config))


@pytest.mark.timeout(10)
def test_scenario_a_all_calls_succeed(seeded_latency):
    """total=10, cap=3, batch=3 with result=index*10."""
    transport = StubTransport()
    call_unit = CallUnit(transport)
    gate = CountingRateGate()
    observer = RecordingObserver()
    collector = ResultCollector()
    dispatcher = Dispatcher(call_unit, collector=collector, rate_gate=gate, enhanced_logger=observer)

    report = _run(dispatcher, total_requests=10, concurrency_limit=3, batch_size=3, cooldown_ms=0)

    assert sorted(report.results) == [10, 20, 30, 40, 50, 60, 70, 80, 90, 100]
    assert sorted(collector.snapshot()) == sorted(report.results)
    assert gate.calls == 3
    assert report.cooldowns == 3
    assert report.dispatched_count == 10
    assert report.failed == 0
    assert observer.dispatched == list(range(1, 11))
    assert max(observer.in_flight_sizes) <= 3


@pytest.mark.timeout(10)
def test_cooldowns_follow_dispatch_counts():
    call_unit = StubCallUnit()
    gate = CountingRateGate(call_unit)
    dispatcher = Dispatcher(call_unit, rate_gate=gate)

    _run(dispatcher, total_requests=10, concurrency_limit=3, batch_size=3)

    assert gate.dispatched_at == [3, 6, 9]


@pytest.mark.timeout(10)
def test_scenario_b_every_call_rate_limited(caplog):
    """total=5, cap=5, batch=5, every call answered with 429."""
    caplog.set_level(logging.WARNING, logger="request_dispatcher")

    def _always_429(index):
        raise http_error(429)

    diagnostics = []
    call_unit = CallUnit(StubTransport(_always_429), on_failure=diagnostics.append)
    gate = CountingRateGate()
    dispatcher = Dispatcher(call_unit, rate_gate=gate)

    report = _run(dispatcher, total_requests=5, concurrency_limit=5, batch_size=5)

    assert report.results == ()
    assert len(dispatcher.collector) == 0
    assert gate.calls == 1
    assert report.failures[ErrorKind.RATE_LIMITED.value] == 5
    assert sorted(f.index for f in diagnostics) == [1, 2, 3, 4, 5]
    assert all(f.kind == ErrorKind.RATE_LIMITED for f in diagnostics)
    rate_limited_logs = [r for r in caplog.records if "Too many requests" in r.getMessage()]
    assert len(rate_limited_logs) == 5


@pytest.mark.timeout(10)
def test_scenario_c_zero_concurrency_rejected():
    call_unit = StubCallUnit()
    gate = CountingRateGate()
    dispatcher = Dispatcher(call_unit, rate_gate=gate)

    with pytest.raises(ConfigError):
        _run(dispatcher, total_requests=10, concurrency_limit=0, batch_size=3)

    assert call_unit.dispatched == []
    assert gate.calls == 0
    assert dispatcher.is_running is False


@pytest.mark.timeout(10)
def test_unvalidated_config_instance_is_revalidated():
    call_unit = StubCallUnit()
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate())
    bogus = DispatchConfig.model_construct(
        concurrency_limit=2, batch_size=0, total_requests=4, cooldown_ms=0
    )

    with pytest.raises(ConfigError):
        asyncio.run(dispatcher.run(bogus))

    assert call_unit.dispatched == []


@pytest.mark.timeout(10)
def test_in_flight_never_exceeds_cap(seeded_latency):
    call_unit = StubCallUnit(latency_fn=seeded_latency)
    observer = RecordingObserver()
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate(), enhanced_logger=observer)

    report = _run(dispatcher, total_requests=40, concurrency_limit=4, batch_size=7)

    assert max(observer.in_flight_sizes) == 4
    assert all(size <= 4 for size in observer.in_flight_sizes)
    assert call_unit.dispatched == list(range(1, 41))
    assert sorted(call_unit.completed) == list(range(1, 41))
    assert report.dispatched_count == 40
    assert report.cooldowns == 40 // 7


@pytest.mark.timeout(10)
def test_completion_order_is_not_dispatch_order():
    # Earlier indexes are slower, so they finish last
    call_unit = StubCallUnit(latency_fn=lambda index: (6 - index) * 0.005)
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate())

    report = _run(dispatcher, total_requests=5, concurrency_limit=5, batch_size=5)

    assert list(report.results) == [50, 40, 30, 20, 10]
    assert call_unit.dispatched == [1, 2, 3, 4, 5]


@pytest.mark.timeout(10)
def test_trailing_partial_batch_adds_no_cooldown():
    call_unit = StubCallUnit()
    gate = CountingRateGate(call_unit)
    dispatcher = Dispatcher(call_unit, rate_gate=gate)

    report = _run(dispatcher, total_requests=10, concurrency_limit=2, batch_size=4)

    assert gate.dispatched_at == [4, 8]
    assert report.cooldowns == 2
    assert report.dispatched_count == 10


@pytest.mark.timeout(10)
def test_cap_above_total_dispatches_back_to_back():
    call_unit = StubCallUnit(latency_fn=lambda index: 0.01)
    observer = RecordingObserver()
    gate = CountingRateGate()
    dispatcher = Dispatcher(call_unit, rate_gate=gate, enhanced_logger=observer)

    report = _run(dispatcher, total_requests=5, concurrency_limit=10, batch_size=100)

    assert observer.in_flight_sizes == [1, 2, 3, 4, 5]
    assert gate.calls == 0
    assert report.succeeded == 5


@pytest.mark.timeout(10)
def test_single_slot_runs_calls_one_at_a_time():
    call_unit = StubCallUnit(latency_fn=lambda index: 0.001)
    observer = RecordingObserver()
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate(), enhanced_logger=observer)

    report = _run(dispatcher, total_requests=6, concurrency_limit=1, batch_size=1)

    assert observer.in_flight_sizes == [1] * 6
    assert list(report.results) == [10, 20, 30, 40, 50, 60]
    assert report.cooldowns == 6


@pytest.mark.timeout(10)
def test_mixed_failures_do_not_stop_the_run():
    def _outcome(index):
        if index % 5 == 0:
            return Failure(index=index, kind=ErrorKind.REQUEST_ERROR, status_code=500)
        if index % 7 == 0:
            return Failure(index=index, kind=ErrorKind.TRANSPORT_ERROR, detail="reset")
        return Success(index=index, value=index)

    call_unit = StubCallUnit(outcome_fn=_outcome)
    observer = RecordingObserver()
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate(), enhanced_logger=observer)

    report = _run(dispatcher, total_requests=20, concurrency_limit=3, batch_size=4)

    failed = {5, 7, 10, 14, 15, 20}
    assert report.dispatched_count == 20
    assert sorted(report.results) == [i for i in range(1, 21) if i not in failed]
    assert len(report.results) < report.total_requests
    assert report.failures == {
        ErrorKind.RATE_LIMITED.value: 0,
        ErrorKind.REQUEST_ERROR.value: 4,
        ErrorKind.TRANSPORT_ERROR.value: 2,
    }
    assert sorted(f.index for f in observer.failures) == sorted(failed)


@pytest.mark.timeout(10)
def test_raising_call_unit_is_contained():
    def _outcome(index):
        if index == 2:
            raise RuntimeError("boom")
        return Success(index=index, value=index)

    call_unit = StubCallUnit(outcome_fn=_outcome)
    observer = RecordingObserver()
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate(), enhanced_logger=observer)

    report = _run(dispatcher, total_requests=4, concurrency_limit=2, batch_size=10)

    assert sorted(report.results) == [1, 3, 4]
    assert report.failures[ErrorKind.TRANSPORT_ERROR.value] == 1
    assert observer.failures[0].index == 2


@pytest.mark.timeout(10)
def test_results_keep_growing_during_cooldown():
    call_unit = StubCallUnit()
    collector = ResultCollector()
    gate = CountingRateGate(call_unit, delay=0.05, probe=lambda: len(collector))
    dispatcher = Dispatcher(call_unit, collector=collector, rate_gate=gate)

    _run(dispatcher, total_requests=6, concurrency_limit=3, batch_size=3)

    # Each batch had settled before its cooldown ended, with no new dispatch in between
    assert gate.dispatched_at == [3, 6]
    assert gate.probed == [3, 6]


@pytest.mark.timeout(10)
def test_same_transport_twice_yields_same_multiset(seeded_latency):
    collector = ResultCollector()
    reports = []
    for _ in range(2):
        call_unit = StubCallUnit(latency_fn=seeded_latency)
        dispatcher = Dispatcher(call_unit, collector=collector, rate_gate=CountingRateGate())
        reports.append(_run(dispatcher, total_requests=15, concurrency_limit=4, batch_size=5))

    assert sorted(reports[0].results) == sorted(reports[1].results)
    # The shared collector only appends: the first run's values stay first
    assert collector.snapshot()[:15] == reports[0].results
    assert len(collector) == 30


@pytest.mark.timeout(10)
def test_cancel_stops_dispatch_and_drains_in_flight():
    holder = {}

    def _on_dispatch(index):
        if index == 4:
            holder["dispatcher"].cancel()

    call_unit = StubCallUnit(latency_fn=lambda index: 0.005, on_dispatch=_on_dispatch)
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate())
    holder["dispatcher"] = dispatcher

    report = _run(dispatcher, total_requests=20, concurrency_limit=3, batch_size=10)

    assert report.cancelled is True
    assert report.dispatched_count == 4
    assert call_unit.dispatched == [1, 2, 3, 4]
    assert sorted(call_unit.completed) == [1, 2, 3, 4]
    assert sorted(report.results) == [10, 20, 30, 40]
    assert dispatcher.is_running is False


@pytest.mark.timeout(10)
def test_second_run_rejected_while_running():
    call_unit = StubCallUnit(latency_fn=lambda index: 0.01)
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate())
    config = {"total_requests": 3, "concurrency_limit": 3, "batch_size": 3}

    async def _scenario():
        first = asyncio.ensure_future(dispatcher.run(config))
        await asyncio.sleep(0)
        assert dispatcher.is_running
        with pytest.raises(DispatchInProgressError):
            await dispatcher.run(config)
        return await first

    report = asyncio.run(_scenario())

    assert report.dispatched_count == 3
    assert call_unit.dispatched == [1, 2, 3]
    assert dispatcher.is_running is False


@pytest.mark.timeout(10)
def test_cancelling_the_run_task_abandons_in_flight_calls():
    call_unit = StubCallUnit(latency_fn=lambda index: 5.0)
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate())

    async def _scenario():
        task = asyncio.ensure_future(
            dispatcher.run({"total_requests": 10, "concurrency_limit": 2, "batch_size": 10})
        )
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(_scenario())

    assert call_unit.dispatched == [1, 2]
    assert call_unit.completed == []
    assert dispatcher.is_running is False


@pytest.mark.timeout(10)
def test_cancel_while_waiting_at_cap_dispatches_nothing_more():
    holder = {}

    def _outcome(index):
        if index == 1:
            holder["dispatcher"].cancel()
        return Success(index=index, value=index * 10)

    call_unit = StubCallUnit(outcome_fn=_outcome, latency_fn=lambda index: 0.01 * index)
    dispatcher = Dispatcher(call_unit, rate_gate=CountingRateGate())
    holder["dispatcher"] = dispatcher

    report = _run(dispatcher, total_requests=20, concurrency_limit=2, batch_size=100)

    assert call_unit.dispatched == [1, 2]
    assert report.dispatched_count == 2
    assert report.cancelled is True
    assert sorted(report.results) == [10, 20]
