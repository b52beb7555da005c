"""
Control loop: meter -> rate -> controller -> EVSE, once per interval.

One cycle:

1. Fetch a meter reading (with a few immediate retries). On failure skip the
   cycle; the previous reading stays as baseline.
2. Without a baseline, store the reading and wait for the next cycle.
3. Compute the average net power. A non-monotonic pair or a stale baseline
   restarts from the new reading; a too-short interval just skips the cycle.
4. Ask the controller for the next command and apply it to the EVSE (with
   immediate retries for transient errors). The controller state is only
   committed once the EVSE accepted the command; otherwise the next cycle
   retries from the same state, indefinitely.
5. Publish telemetry and update the health file. Neither can fail a cycle.

Cycles never overlap. A slow cycle delays the next one. Shutdown cancels the
cycle in flight and sends nothing to the EVSE, which keeps its last setpoint.

CHANGELOG:
- 2026-03-07: Publish telemetry and health after each cycle (STORY-110)
- 2026-03-04: Only commit controller state after a successful apply (STORY-108)
- 2026-03-04: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol, TypeVar

from charger.src.errors import (
    ApplyError,
    FetchError,
    IntervalTooLongError,
    NonMonotonicError,
    RateError,
)
from charger.src.models import TelemetryRecord
from charger.src.rate import DEFAULT_MAX_INTERVAL_S, DEFAULT_MIN_INTERVAL_S, compute

if TYPE_CHECKING:
    from charger.src.controller import ChargeController
    from charger.src.health import HealthWriter
    from charger.src.models import (
        EvseCommand,
        EvseStatus,
        MeterReading,
        NetPowerSample,
    )

logger = logging.getLogger(__name__)

_T = TypeVar("_T")


# ---------------------------------------------------------------------------
# Peripheral interfaces
# ---------------------------------------------------------------------------


class MeterClient(Protocol):
    async def fetch(self) -> MeterReading: ...


class EvseClient(Protocol):
    async def apply(self, command: EvseCommand) -> None: ...

    async def status(self) -> EvseStatus: ...


class TelemetrySink(Protocol):
    def publish(self, record: TelemetryRecord) -> None: ...


# ---------------------------------------------------------------------------
# Cycle report
# ---------------------------------------------------------------------------


class CycleOutcome(StrEnum):
    """How a control cycle ended."""

    METER_UNAVAILABLE = "meter_unavailable"
    BASELINE = "baseline"
    RESYNC = "resync"
    STALE_BASELINE = "stale_baseline"
    RATE_UNAVAILABLE = "rate_unavailable"
    APPLIED = "applied"
    APPLY_FAILED = "apply_failed"


@dataclass(frozen=True, slots=True)
class CycleReport:
    """Result of :meth:`SchedulerLoop.run_cycle`."""

    outcome: CycleOutcome
    sample: NetPowerSample | None = None
    command: EvseCommand | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class SchedulerLoop:
    """Owns the previous meter reading and drives the control cycle.

    Args:
        meter: Source of meter readings.
        evse: EVSE command target.
        controller: Charge decision state machine.
        telemetry: Telemetry sink, or None to skip publishing.
        health: HealthWriter instance, or None to skip health writes.
        min_interval_s: Shortest accepted interval between readings.
        max_interval_s: Longest accepted interval between readings.
        retry_attempts: Immediate retries per peripheral call.
        retry_delay_s: Pause between immediate retries.
        apply_failure_alert_cycles: Consecutive failed-apply cycles after
            which each further failure is logged at ERROR.
    """

    def __init__(
        self,
        *,
        meter: MeterClient,
        evse: EvseClient,
        controller: ChargeController,
        telemetry: TelemetrySink | None = None,
        health: HealthWriter | None = None,
        min_interval_s: float = DEFAULT_MIN_INTERVAL_S,
        max_interval_s: float = DEFAULT_MAX_INTERVAL_S,
        retry_attempts: int = 2,
        retry_delay_s: float = 1.0,
        apply_failure_alert_cycles: int = 5,
    ) -> None:
        self._meter = meter
        self._evse = evse
        self._controller = controller
        self._telemetry = telemetry
        self._health = health
        self._min_interval_s = min_interval_s
        self._max_interval_s = max_interval_s
        self._retry_attempts = retry_attempts
        self._retry_delay_s = retry_delay_s
        self._apply_failure_alert_cycles = apply_failure_alert_cycles
        self.previous: MeterReading | None = None
        self.consecutive_apply_failures: int = 0

    @property
    def controller(self) -> ChargeController:
        return self._controller

    # ------------------------------------------------------------------
    # Single cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one control cycle and report how it ended."""
        try:
            current = await self._with_retries("meter fetch", self._meter.fetch)
        except FetchError as exc:
            logger.warning("Meter unavailable, skipping cycle: %s", exc)
            return self._finish(CycleReport(CycleOutcome.METER_UNAVAILABLE, error=str(exc)))

        if self.previous is None:
            self.previous = current
            logger.info("Stored first meter reading as baseline")
            return self._finish(CycleReport(CycleOutcome.BASELINE))

        try:
            sample = compute(
                self.previous,
                current,
                min_interval_s=self._min_interval_s,
                max_interval_s=self._max_interval_s,
            )
        except NonMonotonicError as exc:
            logger.warning("Meter counters not monotonic, resyncing baseline: %s", exc)
            self.previous = current
            return self._finish(CycleReport(CycleOutcome.RESYNC, error=str(exc)))
        except IntervalTooLongError as exc:
            # The old baseline is as good as no reading; restart from this one.
            logger.warning("Baseline reading is stale, starting over: %s", exc)
            self.previous = current
            return self._finish(CycleReport(CycleOutcome.STALE_BASELINE, error=str(exc)))
        except RateError as exc:
            logger.warning("No usable rate this cycle: %s", exc)
            return self._finish(CycleReport(CycleOutcome.RATE_UNAVAILABLE, error=str(exc)))

        self.previous = current
        decision = self._controller.propose(sample)
        command = decision.command
        logger.info(
            "Net %.0f W over %.0fs, available %.2f A -> %s",
            sample.average_watts,
            sample.interval_seconds,
            decision.available_current_amps,
            _describe(command),
        )

        status: EvseStatus | None = None
        try:
            await self._with_retries("EVSE apply", lambda: self._evse.apply(command))
        except ApplyError as exc:
            self.consecutive_apply_failures += 1
            log = (
                logger.error
                if self.consecutive_apply_failures >= self._apply_failure_alert_cycles
                else logger.warning
            )
            log(
                "EVSE command %s failed (%d consecutive cycles), will retry next cycle: %s",
                _describe(command),
                self.consecutive_apply_failures,
                exc,
            )
            report = CycleReport(CycleOutcome.APPLY_FAILED, sample, command, str(exc))
        else:
            self._controller.commit(decision)
            self.consecutive_apply_failures = 0
            if self._health is not None:
                self._safe_health(self._health.record_apply)
            status = await self._evse_status()
            report = CycleReport(CycleOutcome.APPLIED, sample, command)

        self._publish(
            TelemetryRecord(
                timestamp=current.timestamp,
                average_watts=sample.average_watts,
                interval_seconds=sample.interval_seconds,
                available_current_amps=decision.available_current_amps,
                charge_state=self._controller.state.charge_state,
                command=command,
                applied=report.outcome is CycleOutcome.APPLIED,
                error=report.error,
                evse_status=status,
            )
        )
        return self._finish(report)

    # ------------------------------------------------------------------
    # Loop runner
    # ------------------------------------------------------------------

    async def run(self, *, interval_s: float, shutdown_event: asyncio.Event) -> None:
        """Run cycles every ``interval_s`` until ``shutdown_event`` is set.

        The next cycle starts ``interval_s`` after the previous one started,
        or straight away if that one overran. Shutdown cancels the cycle in
        flight.
        """
        logger.info("Control loop started (interval=%ss)", interval_s)
        loop = asyncio.get_running_loop()
        while not shutdown_event.is_set():
            started = loop.time()
            finished = await self._run_cycle_until_shutdown(shutdown_event)
            if not finished:
                break
            remaining = interval_s - (loop.time() - started)
            if remaining > 0:
                # Use wait with timeout so we can check shutdown between sleeps
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(shutdown_event.wait(), timeout=remaining)
        logger.info("Control loop stopped")

    async def _run_cycle_until_shutdown(self, shutdown_event: asyncio.Event) -> bool:
        """Run one cycle; return False if shutdown interrupted it."""
        cycle = asyncio.ensure_future(self._guarded_cycle())
        stop = asyncio.ensure_future(shutdown_event.wait())
        try:
            await asyncio.wait({cycle, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
        if cycle.done():
            return True
        logger.info("Shutdown requested, abandoning cycle in flight")
        cycle.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await cycle
        return False

    async def _guarded_cycle(self) -> None:
        """Run a cycle, logging instead of propagating unexpected errors."""
        try:
            report = await self.run_cycle()
            logger.debug("Cycle finished: %s", report.outcome)
        except Exception:
            logger.error("Control cycle error", exc_info=True)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _with_retries(
        self, label: str, call: Callable[[], Awaitable[_T]]
    ) -> _T:
        """Await ``call`` with immediate retries for transient errors."""
        attempt = 0
        while True:
            try:
                return await call()
            except (FetchError, ApplyError) as exc:
                if not exc.transient or attempt >= self._retry_attempts:
                    raise
                attempt += 1
                logger.warning(
                    "%s failed (%s), retry %d/%d in %.1fs",
                    label,
                    exc,
                    attempt,
                    self._retry_attempts,
                    self._retry_delay_s,
                )
                await asyncio.sleep(self._retry_delay_s)

    async def _evse_status(self) -> EvseStatus | None:
        try:
            return await self._evse.status()
        except FetchError as exc:
            logger.warning("EVSE status unavailable: %s", exc)
            return None

    def _publish(self, record: TelemetryRecord) -> None:
        if self._telemetry is None:
            return
        try:
            self._telemetry.publish(record)
        except Exception:
            logger.warning("Failed to publish telemetry", exc_info=True)

    def _finish(self, report: CycleReport) -> CycleReport:
        if self._health is not None:
            self._safe_health(
                self._health.set_apply_failures, self.consecutive_apply_failures
            )
            self._safe_health(
                self._health.record_cycle, self._controller.state.charge_state
            )
        return report

    @staticmethod
    def _safe_health(method: Callable[..., None], *args: object) -> None:
        try:
            method(*args)
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)


def _describe(command: EvseCommand) -> str:
    if command.enabled:
        return f"charge at {command.charge_current_amps:g} A"
    return "sleep"
