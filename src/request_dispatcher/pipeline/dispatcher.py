"""
Bounded-Concurrency Dispatcher

Issues ``total_requests`` indexed calls while keeping at most
``concurrency_limit`` of them in flight, and pauses dispatch for a cooldown
after every ``batch_size`` dispatched calls. Individual call failures never
stop the run.

All run state is mutated from the dispatcher's own coroutine: call tasks only
produce outcomes, and the loop consumes their completion through
``asyncio.wait`` at its suspension points.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
from uuid import uuid4

from request_dispatcher.core.utils.run_summary import RunSummaryWriter
from request_dispatcher.io.collector import ResultCollector
from request_dispatcher.io.schema import ErrorKind, Failure, RunReport, Success
from request_dispatcher.pipeline.config import DispatchConfig, DispatchError, build_dispatch_config
from request_dispatcher.pipeline.rate_gate import RateGate

logger = logging.getLogger(__name__)


class DispatchInProgressError(DispatchError):
    """Raised when a run is started while another run of the same dispatcher is active."""
    pass


@dataclass
class RunState:
    """Mutable bookkeeping for one run, owned by the dispatcher loop."""

    run_id: str
    dispatched_count: int = 0
    in_flight: Dict[asyncio.Future, int] = field(default_factory=dict)
    results: List[Any] = field(default_factory=list)
    cooldowns: int = 0
    failures: Dict[str, int] = field(default_factory=lambda: {kind.value: 0 for kind in ErrorKind})


class Dispatcher:
    """Runs dispatch loops against a call unit, one run at a time."""

    def __init__(
        self,
        call_unit,
        collector: Optional[ResultCollector] = None,
        rate_gate: Optional[RateGate] = None,
        enhanced_logger=None,
    ):
        """
        Initialize the dispatcher.

        Args:
            call_unit: Object exposing ``async send(index) -> Outcome``
            collector: Receives every successful value, in completion order
            rate_gate: Cooldown gate; when omitted one is built per run from ``cooldown_ms``
            enhanced_logger: Optional EnhancedLogger tracking run metrics
        """
        self.call_unit = call_unit
        self.collector = collector if collector is not None else ResultCollector()
        self.rate_gate = rate_gate
        self.enhanced_logger = enhanced_logger

        self._running = False
        self._cancel_requested = False
        self._summary_writer: Optional[RunSummaryWriter] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        """Stop dispatching new calls; calls already in flight are still awaited."""
        if self._running:
            logger.info("Cancellation requested, no further calls will be dispatched")
            self._cancel_requested = True

    async def run(
        self,
        config: Union[DispatchConfig, Mapping[str, Any]],
        run_id: Optional[str] = None,
        summary_writer: Optional[RunSummaryWriter] = None,
    ) -> RunReport:
        """
        Dispatch every call of a run and wait for all of them to settle.

        Args:
            config: Dispatch parameters (validated before anything is sent)
            run_id: Identifier for logs and summaries (generated when omitted)
            summary_writer: Optional writer receiving run events and the final roll-up

        Returns:
            RunReport: Summary of the finished run

        Raises:
            ConfigError: If the configuration is invalid
            DispatchInProgressError: If this dispatcher is already running
        """
        config = build_dispatch_config(config)
        if self._running:
            raise DispatchInProgressError("A dispatch run is already in progress")

        self._running = True
        self._cancel_requested = False
        self._summary_writer = summary_writer
        try:
            return await self._run(config, run_id or str(uuid4()))
        finally:
            self._running = False
            self._summary_writer = None

    async def _run(self, config: DispatchConfig, run_id: str) -> RunReport:
        state = RunState(run_id=run_id)
        rate_gate = self.rate_gate or RateGate(config.cooldown_ms)
        started_at = datetime.now()

        logger.info(
            f"Starting dispatch run {run_id}: {config.total_requests} requests, "
            f"concurrency={config.concurrency_limit} batch_size={config.batch_size}"
        )
        if self.enhanced_logger:
            self.enhanced_logger.log_run_banner(
                run_id,
                config.concurrency_limit,
                config.batch_size,
                config.total_requests,
                config.cooldown_ms,
            )
        self._emit({"event": "run_started", "config": config.model_dump()})

        try:
            while state.dispatched_count < config.total_requests and not self._cancel_requested:
                while len(state.in_flight) >= config.concurrency_limit:
                    await self._settle_first(state)
                if self._cancel_requested:
                    break

                index = state.dispatched_count + 1
                state.in_flight[asyncio.ensure_future(self.call_unit.send(index))] = index
                state.dispatched_count += 1
                if self.enhanced_logger:
                    self.enhanced_logger.log_call_dispatched(index, len(state.in_flight))

                if state.dispatched_count % config.batch_size == 0:
                    await self._cooldown(state, config, rate_gate)

            if self._cancel_requested:
                logger.warning(
                    f"Run {run_id} cancelled after {state.dispatched_count} dispatched calls, "
                    f"draining {len(state.in_flight)} in flight"
                )

            while state.in_flight:
                await self._settle_first(state)
        except asyncio.CancelledError:
            await self._abandon(state)
            raise

        report = RunReport(
            run_id=run_id,
            total_requests=config.total_requests,
            dispatched_count=state.dispatched_count,
            results=tuple(state.results),
            failures=dict(state.failures),
            cooldowns=state.cooldowns,
            started_at=started_at,
            finished_at=datetime.now(),
            cancelled=self._cancel_requested,
            config=config.model_dump(),
        )

        summary = report.to_dict()
        logger.info(
            f"Dispatch run {run_id} finished: {report.succeeded} succeeded, "
            f"{report.failed} failed, {report.cooldowns} cooldowns"
        )
        if self.enhanced_logger:
            self.enhanced_logger.log_run_end(run_id, summary)
        self._emit({"event": "run_completed", "totals": summary})
        if self._summary_writer:
            self._summary_writer.write_final_summary(summary)
        return report

    async def _settle_first(self, state: RunState) -> None:
        """Wait until any in-flight call finishes (first completion wins) and settle it."""
        done, _ = await asyncio.wait(set(state.in_flight), return_when=asyncio.FIRST_COMPLETED)
        self._settle(state, done)

    async def _cooldown(self, state: RunState, config: DispatchConfig, rate_gate: RateGate) -> None:
        """Pause dispatch for one cooldown while still settling calls that finish meanwhile."""
        state.cooldowns += 1
        if self.enhanced_logger:
            self.enhanced_logger.log_cooldown(
                state.dispatched_count, config.cooldown_ms, len(state.in_flight)
            )
        self._emit({
            "event": "cooldown_started",
            "dispatched_count": state.dispatched_count,
            "in_flight": len(state.in_flight),
        })

        cooldown = asyncio.ensure_future(rate_gate.cooldown())
        try:
            while not cooldown.done():
                done, _ = await asyncio.wait(
                    set(state.in_flight) | {cooldown}, return_when=asyncio.FIRST_COMPLETED
                )
                done.discard(cooldown)
                self._settle(state, done)
        finally:
            if not cooldown.done():
                cooldown.cancel()
        cooldown.result()

    def _settle(self, state: RunState, finished: Iterable[asyncio.Future]) -> None:
        for task in finished:
            index = state.in_flight.pop(task)
            try:
                outcome = task.result()
            except Exception as e:
                # Call units must not raise; contain it like a transport failure.
                logger.error(f"Call unit raised for request {index}: {type(e).__name__}: {e}")
                outcome = Failure(index=index, kind=ErrorKind.TRANSPORT_ERROR, detail=str(e))

            if isinstance(outcome, Success):
                state.results.append(outcome.value)
                self.collector.append(outcome.value)
                if self.enhanced_logger:
                    self.enhanced_logger.log_call_succeeded(outcome.index, outcome.value)
            else:
                state.failures[outcome.kind.value] += 1
                if self.enhanced_logger:
                    self.enhanced_logger.log_call_failure(outcome)
                self._emit({
                    "event": "call_failed",
                    "index": outcome.index,
                    "kind": outcome.kind.value,
                    "status_code": outcome.status_code,
                })

    async def _abandon(self, state: RunState) -> None:
        """Cancel every in-flight call when the run itself is cancelled."""
        if not state.in_flight:
            return
        logger.warning(f"Run {state.run_id} cancelled, abandoning {len(state.in_flight)} in-flight calls")
        for task in state.in_flight:
            task.cancel()
        await asyncio.gather(*list(state.in_flight), return_exceptions=True)
        state.in_flight.clear()

    def _emit(self, event: Dict[str, Any]) -> None:
        if self._summary_writer:
            self._summary_writer.append_event(event)
