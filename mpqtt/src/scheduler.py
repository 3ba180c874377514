"""
Two-tier polling scheduler -- the agent's main loop.

Each outer pass runs ``inner_iterations`` inner passes followed by the outer
tier:

1. **Inner pass**: the fast-cadence status query -- QPIGS in default mode, or
   QPGSn for every parallel unit in phocos mode -- then the ``inner_stats``
   heartbeat and a sleep of ``inner_delay`` seconds.
2. **Outer finalize**: QMOD, QPIWS and QPIRI (full or reduced schema by
   mode), then the ``outer_stats`` heartbeat (measured from the start of the
   outer pass) and a sleep of ``outer_delay`` seconds.

A pass that completes clears the ``error`` channel. Any command failure
abandons the rest of the pass, publishes the error, sleeps ``error_delay``
seconds and starts a fresh outer pass from inner pass 1. There is no
terminal state: polling never gives up.

Elapsed times are measured on a monotonic clock and reported in whole
milliseconds. Both tiers share one timed-pass primitive.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Protocol

from mpqtt.src.commands import Command
from mpqtt.src.config import Mode
from mpqtt.src.models import CycleStats
from mpqtt.src.protocol import InverterError

if TYPE_CHECKING:
    from mpqtt.src.config import Settings
    from mpqtt.src.health import HealthWriter
    from mpqtt.src.models import Record
    from mpqtt.src.sink import TelemetrySink

logger = logging.getLogger(__name__)

INNER_STATS_SUFFIX = "inner_stats"
OUTER_STATS_SUFFIX = "outer_stats"


class CommandExecutor(Protocol):
    """Anything that runs one command at a time and returns its record."""

    async def execute(self, command: Command) -> Record: ...


class SchedulerState(str, Enum):
    """Where the scheduler currently is within a cycle."""

    IDLE = "idle"
    INNER_PASS = "inner_pass"
    OUTER_FINALIZE = "outer_finalize"
    ERROR_BACKOFF = "error_backoff"


@dataclass(frozen=True, slots=True)
class ScheduledCommand:
    """A command in a pass plan.

    Attributes:
        command: The command to execute.
        publish: Whether its result is published. Parallel unit 0 is polled
            but not published unless debug is enabled.
    """

    command: Command
    publish: bool = True


@dataclass(frozen=True, slots=True)
class CycleOutcome:
    """Result of one outer pass.

    Attributes:
        success: True if every command in the pass succeeded.
        inner_passes: Inner passes completed before success or failure.
        error: Error text published on failure, else ``None``.
    """

    success: bool
    inner_passes: int
    error: str | None = None


# ---------------------------------------------------------------------------
# Mode-dependent plans
# ---------------------------------------------------------------------------


def build_inner_plan(settings: Settings) -> tuple[ScheduledCommand, ...]:
    """Return the commands of one inner pass for *settings*.

    Default mode polls the aggregate QPIGS status. Phocos mode polls QPGSn
    for units 1..inverter_count, starting at unit 0 when debug is enabled.
    """
    if settings.mode is not Mode.PHOCOS:
        return (ScheduledCommand(Command.QPIGS),)

    start = 0 if settings.debug else 1
    return tuple(
        ScheduledCommand(Command.qpgs(index), publish=settings.debug or index != 0)
        for index in range(start, settings.inverter_count + 1)
    )


def build_outer_plan(settings: Settings) -> tuple[ScheduledCommand, ...]:
    """Return the outer-tier commands for *settings*."""
    rating = Command.QPIRI_REDUCED if settings.mode is Mode.PHOCOS else Command.QPIRI
    return (
        ScheduledCommand(Command.QMOD),
        ScheduledCommand(Command.QPIWS),
        ScheduledCommand(rating),
    )


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class Scheduler:
    """Runs the nested inner/outer polling schedule forever.

    Args:
        inverter: Command executor; called strictly one command at a time.
        sink: Telemetry sink for results, heartbeats and errors.
        settings: Agent settings (mode, counts and delays).
        health: Optional liveness file writer.
        sleep: Awaitable sleep, injectable for tests.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        *,
        inverter: CommandExecutor,
        sink: TelemetrySink,
        settings: Settings,
        health: HealthWriter | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._inverter = inverter
        self._sink = sink
        self._settings = settings
        self._health = health
        self._sleep = sleep
        self._clock = clock
        self._inner_plan = build_inner_plan(settings)
        self._outer_plan = build_outer_plan(settings)
        self._state = SchedulerState.IDLE
        self._inner_passes = 0

    @property
    def state(self) -> SchedulerState:
        """Current position in the cycle."""
        return self._state

    async def run_forever(self) -> None:
        """Run outer passes back to back; never returns."""
        logger.info(
            "Scheduler started: mode=%s, inner_iterations=%d, inner_delay=%ss, outer_delay=%ss",
            self._settings.mode.value,
            self._settings.inner_iterations,
            self._settings.inner_delay,
            self._settings.outer_delay,
        )
        while True:
            await self.run_cycle()

    async def run_cycle(self) -> CycleOutcome:
        """Run one outer pass, handling any failure with error backoff.

        Catches all exceptions so that the caller's loop is never broken.
        """
        self._state = SchedulerState.IDLE
        self._inner_passes = 0
        logger.debug("Starting new update")
        try:
            await self._outer_pass()
        except InverterError as exc:
            return await self._error_backoff(exc)
        except Exception as exc:
            logger.error("Unexpected error during update", exc_info=True)
            return await self._error_backoff(exc)

        self._state = SchedulerState.IDLE
        if not await self._sink.clear_error():
            logger.error("Failed to clear error")
        self._update_health(lambda health: health.record_cleared())
        return CycleOutcome(success=True, inner_passes=self._inner_passes)

    # ------------------------------------------------------------------
    # Tiers
    # ------------------------------------------------------------------

    async def _outer_pass(self) -> None:
        outer_start = self._clock()
        for _ in range(self._settings.inner_iterations):
            self._state = SchedulerState.INNER_PASS
            await self._timed_pass(
                self._inner_plan,
                stats_suffix=INNER_STATS_SUFFIX,
                delay=self._settings.inner_delay,
                started_at=self._clock(),
                label="Partial",
            )
            self._inner_passes += 1
            self._update_health(lambda health: health.record_inner_pass())

        self._state = SchedulerState.OUTER_FINALIZE
        await self._timed_pass(
            self._outer_plan,
            stats_suffix=OUTER_STATS_SUFFIX,
            delay=self._settings.outer_delay,
            started_at=outer_start,
            label="Full",
        )
        self._update_health(lambda health: health.record_outer_pass())

    async def _timed_pass(
        self,
        plan: Sequence[ScheduledCommand],
        *,
        stats_suffix: str,
        delay: int,
        started_at: float,
        label: str,
    ) -> int:
        """Execute *plan*, publish results and the pass duration, then sleep.

        Returns:
            Elapsed milliseconds from *started_at* to the end of the plan.
        """
        for step in plan:
            record = await self._inverter.execute(step.command)
            if step.publish:
                await self._sink.publish_record(step.command.suffix, record)

        elapsed_ms = int((self._clock() - started_at) * 1000)
        logger.info("%s update took %dms - sleeping for %ds", label, elapsed_ms, delay)
        await self._sink.publish_record(stats_suffix, CycleStats(update_duration=elapsed_ms))
        await self._sleep(delay)
        return elapsed_ms

    async def _error_backoff(self, exc: Exception) -> CycleOutcome:
        self._state = SchedulerState.ERROR_BACKOFF
        message = str(exc) or type(exc).__name__
        await self._sink.publish_error(message)
        logger.error(
            "Published error: %s - sleeping for %ds",
            message,
            self._settings.error_delay,
        )
        self._update_health(lambda health: health.record_error(message))
        await self._sleep(self._settings.error_delay)
        self._state = SchedulerState.IDLE
        return CycleOutcome(success=False, inner_passes=self._inner_passes, error=message)

    def _update_health(self, update: Callable[[HealthWriter], None]) -> None:
        if self._health is None:
            return
        try:
            update(self._health)
        except OSError:
            logger.warning("Failed to write health file", exc_info=True)
