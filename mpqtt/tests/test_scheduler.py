"""
Tests for the two-tier polling scheduler.

Uses FakeInverter for device answers and EventLog to capture publishes and
sleeps in one ordered list under a fake monotonic clock.

Tests verify:
- Default mode publishes QPIGS each inner pass, then QMOD, QPIWS, QPIRI.
- Phocos mode polls QPGS1..n, adding unit 0 only when debug is enabled.
- Heartbeats carry inner and outer pass durations in milliseconds.
- A failed command publishes the error, sleeps error_delay and restarts.
- The error channel is cleared once after every successful outer pass.
- Publish failures never stop polling.
- The optional health file tracks passes and errors.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest
from aiomqtt import MqttError

from mpqtt.src.commands import Command
from mpqtt.src.health import HealthWriter
from mpqtt.src.protocol import ChecksumError, CommandRejectedError, TransportError
from mpqtt.src.scheduler import (
    Scheduler,
    SchedulerState,
    ScheduledCommand,
    build_inner_plan,
    build_outer_plan,
)
from mpqtt.tests.fakes import EventLog, FakeInverter, make_settings


class _Stop(BaseException):
    """Escapes run_forever, which catches every Exception."""


def _scheduler(
    event_log: EventLog,
    inverter: FakeInverter,
    health: HealthWriter | None = None,
    **overrides: object,
) -> Scheduler:
    return Scheduler(
        inverter=inverter,
        sink=event_log.sink,
        settings=make_settings(**overrides),
        health=health,
        sleep=event_log.sleep,
        clock=event_log.clock,
    )


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class TestPlans:
    """Mode and debug select the commands of each tier."""

    def test_default_inner_plan(self) -> None:
        assert build_inner_plan(make_settings()) == (ScheduledCommand(Command.QPIGS),)

    def test_default_mode_ignores_inverter_count(self) -> None:
        plan = build_inner_plan(make_settings(inverter_count=4, debug=True))
        assert [step.command for step in plan] == [Command.QPIGS]

    def test_phocos_inner_plan_skips_unit_zero(self) -> None:
        plan = build_inner_plan(make_settings(mode="phocos", inverter_count=3))
        assert [step.command for step in plan] == [Command.QPGS1, Command.QPGS2, Command.QPGS3]
        assert all(step.publish for step in plan)

    def test_phocos_debug_inner_plan_includes_unit_zero(self) -> None:
        plan = build_inner_plan(make_settings(mode="phocos", inverter_count=2, debug=True))
        assert plan == (
            ScheduledCommand(Command.QPGS0),
            ScheduledCommand(Command.QPGS1),
            ScheduledCommand(Command.QPGS2),
        )

    def test_phocos_zero_count_inner_plan_is_empty(self) -> None:
        assert build_inner_plan(make_settings(mode="phocos", inverter_count=0)) == ()

    def test_outer_plan_by_mode(self) -> None:
        default = build_outer_plan(make_settings())
        phocos = build_outer_plan(make_settings(mode="phocos"))
        assert [s.command for s in default] == [Command.QMOD, Command.QPIWS, Command.QPIRI]
        assert [s.command for s in phocos] == [
            Command.QMOD,
            Command.QPIWS,
            Command.QPIRI_REDUCED,
        ]


# ---------------------------------------------------------------------------
# Successful cycles
# ---------------------------------------------------------------------------


class TestSuccessfulCycle:
    """A full outer pass publishes in a fixed order and clears the error."""

    @pytest.mark.asyncio
    async def test_default_mode_sequence(self, event_log: EventLog, inverter: FakeInverter) -> None:
        scheduler = _scheduler(event_log, inverter)

        outcome = await scheduler.run_cycle()

        assert outcome.success is True
        assert outcome.inner_passes == 2
        assert event_log.sequence() == [
            "qpigs",
            "inner_stats",
            "sleep:1",
            "qpigs",
            "inner_stats",
            "sleep:1",
            "qmod",
            "qpiws",
            "qpiri",
            "outer_stats",
            "sleep:5",
            "error(cleared)",
        ]
        assert inverter.calls == [
            Command.QPIGS,
            Command.QPIGS,
            Command.QMOD,
            Command.QPIWS,
            Command.QPIRI,
        ]

    @pytest.mark.asyncio
    async def test_published_payloads_are_record_json(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        await _scheduler(event_log, inverter).run_cycle()

        qpigs = json.loads(event_log.payload_for("qpigs")[0])
        qmod = json.loads(event_log.payload_for("qmod")[0])
        qpiri = json.loads(event_log.payload_for("qpiri")[0])
        assert qpigs["battery_voltage"] == 57.5
        assert qpigs["load_on"] is True
        assert qmod == {"mode": "Battery"}
        assert "pv_power_balance" in qpiri

    @pytest.mark.asyncio
    async def test_zero_inner_iterations_goes_straight_to_outer_tier(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        outcome = await _scheduler(event_log, inverter, inner_iterations=0).run_cycle()

        assert outcome.inner_passes == 0
        assert event_log.sequence() == [
            "qmod",
            "qpiws",
            "qpiri",
            "outer_stats",
            "sleep:5",
            "error(cleared)",
        ]

    @pytest.mark.asyncio
    async def test_error_cleared_once_per_pass(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        scheduler = _scheduler(event_log, inverter)

        await scheduler.run_cycle()
        await scheduler.run_cycle()

        assert event_log.payload_for("error") == ["", ""]

    @pytest.mark.asyncio
    async def test_error_cleared_after_outer_sleep(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        await _scheduler(event_log, inverter).run_cycle()

        sequence = event_log.sequence()
        assert sequence[-2:] == ["sleep:5", "error(cleared)"]


class TestPhocosMode:
    """Parallel installations poll QPGSn and use the reduced rating schema."""

    @pytest.mark.asyncio
    async def test_units_one_to_count_without_debug(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        scheduler = _scheduler(
            event_log, inverter, mode="phocos", inverter_count=3, inner_iterations=1
        )

        await scheduler.run_cycle()

        assert event_log.sequence() == [
            "qpgs1",
            "qpgs2",
            "qpgs3",
            "inner_stats",
            "sleep:1",
            "qmod",
            "qpiws",
            "qpiri",
            "outer_stats",
            "sleep:5",
            "error(cleared)",
        ]
        assert Command.QPGS0 not in inverter.calls
        assert Command.QPIRI_REDUCED in inverter.calls

    @pytest.mark.asyncio
    async def test_debug_polls_and_publishes_unit_zero(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        scheduler = _scheduler(
            event_log, inverter, mode="phocos", inverter_count=3, inner_iterations=1, debug=True
        )

        await scheduler.run_cycle()

        assert inverter.calls[:4] == [Command.QPGS0, Command.QPGS1, Command.QPGS2, Command.QPGS3]
        assert event_log.sequence()[:4] == ["qpgs0", "qpgs1", "qpgs2", "qpgs3"]

    @pytest.mark.asyncio
    async def test_zero_count_publishes_only_heartbeat(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        scheduler = _scheduler(
            event_log, inverter, mode="phocos", inverter_count=0, inner_iterations=1
        )

        await scheduler.run_cycle()

        assert event_log.sequence()[:2] == ["inner_stats", "sleep:1"]
        assert inverter.calls == [Command.QMOD, Command.QPIWS, Command.QPIRI_REDUCED]

    @pytest.mark.asyncio
    async def test_reduced_rating_published_on_qpiri_channel(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        await _scheduler(event_log, inverter, mode="phocos", inner_iterations=0).run_cycle()

        qpiri = json.loads(event_log.payload_for("qpiri")[0])
        assert qpiri["output_mode"] == 0
        assert "pv_power_balance" not in qpiri


# ---------------------------------------------------------------------------
# Heartbeats
# ---------------------------------------------------------------------------


class TestHeartbeats:
    """Stats report elapsed milliseconds on the injected monotonic clock."""

    @pytest.mark.asyncio
    async def test_inner_and_outer_durations(self, event_log: EventLog) -> None:
        inverter = FakeInverter(on_execute=lambda _command: event_log.advance(0.25))

        await _scheduler(event_log, inverter).run_cycle()

        inner = [json.loads(p) for p in event_log.payload_for("inner_stats")]
        outer = [json.loads(p) for p in event_log.payload_for("outer_stats")]
        assert inner == [{"update_duration": 250}, {"update_duration": 250}]
        # two inner passes (0.25s + 1s sleep each) plus three outer commands
        assert outer == [{"update_duration": 3250}]

    @pytest.mark.asyncio
    async def test_instant_pass_reports_zero(
        self, event_log: EventLog, inverter: FakeInverter
    ) -> None:
        await _scheduler(event_log, inverter, inner_iterations=0, outer_delay=0).run_cycle()

        assert event_log.payload_for("outer_stats") == ['{"update_duration":0}']

    @pytest.mark.asyncio
    async def test_duration_is_logged(
        self, event_log: EventLog, inverter: FakeInverter, caplog: pytest.LogCaptureFixture
    ) -> None:
        with caplog.at_level(logging.INFO, logger="mpqtt"):
            await _scheduler(event_log, inverter).run_cycle()

        assert "Partial update took 0ms - sleeping for 1s" in caplog.text
        assert "Full update took 2000ms - sleeping for 5s" in caplog.text


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailureHandling:
    """A failed command aborts the pass and triggers error backoff."""

    @pytest.mark.asyncio
    async def test_failure_in_second_inner_pass(self, event_log: EventLog) -> None:
        inverter = FakeInverter(failures={2: TransportError("Timed out reading from device")})
        scheduler = _scheduler(event_log, inverter)

        outcome = await scheduler.run_cycle()

        assert outcome.success is False
        assert outcome.inner_passes == 1
        assert outcome.error == "Timed out reading from device"
        assert event_log.sequence() == [
            "qpigs",
            "inner_stats",
            "sleep:1",
            "error(Timed out reading from device)",
            "sleep:3",
        ]

    @pytest.mark.asyncio
    async def test_next_cycle_restarts_from_first_inner_pass(self, event_log: EventLog) -> None:
        inverter = FakeInverter(failures={4: ChecksumError("CRC mismatch")})
        scheduler = _scheduler(event_log, inverter)

        failed = await scheduler.run_cycle()
        event_log.events.clear()
        recovered = await scheduler.run_cycle()

        assert failed.success is False
        assert inverter.calls[3] is Command.QPIWS
        assert inverter.calls[4] is Command.QPIGS
        assert recovered.success is True
        assert event_log.sequence()[0] == "qpigs"
        assert event_log.sequence()[-1] == "error(cleared)"

    @pytest.mark.asyncio
    async def test_failure_in_outer_tier_skips_stats(self, event_log: EventLog) -> None:
        inverter = FakeInverter(failures={2: CommandRejectedError("Device rejected command (NAK)")})

        await _scheduler(event_log, inverter, inner_iterations=0).run_cycle()

        assert event_log.sequence() == [
            "qmod",
            "error(Device rejected command (NAK))",
            "sleep:3",
        ]
        assert "outer_stats" not in event_log.sequence()

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_handled(
        self, event_log: EventLog, caplog: pytest.LogCaptureFixture
    ) -> None:
        inverter = FakeInverter(failures={1: RuntimeError("boom")})

        with caplog.at_level(logging.ERROR, logger="mpqtt"):
            outcome = await _scheduler(event_log, inverter).run_cycle()

        assert outcome.error == "boom"
        assert "Unexpected error during update" in caplog.text

    @pytest.mark.asyncio
    async def test_empty_message_falls_back_to_class_name(self, event_log: EventLog) -> None:
        inverter = FakeInverter(failures={1: TransportError()})

        outcome = await _scheduler(event_log, inverter).run_cycle()

        assert outcome.error == "TransportError"
        assert event_log.payload_for("error") == ["TransportError"]

    @pytest.mark.asyncio
    async def test_failure_is_logged_with_delay(
        self, event_log: EventLog, caplog: pytest.LogCaptureFixture
    ) -> None:
        inverter = FakeInverter(failures={1: TransportError("Device closed")})

        with caplog.at_level(logging.ERROR, logger="mpqtt"):
            await _scheduler(event_log, inverter).run_cycle()

        assert "Published error: Device closed - sleeping for 3s" in caplog.text


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class TestSchedulerState:
    """The scheduler reports which part of the cycle it is in."""

    @pytest.mark.asyncio
    async def test_states_during_successful_cycle(self, event_log: EventLog) -> None:
        seen: list[tuple[Command, SchedulerState]] = []
        scheduler: Scheduler | None = None

        def on_execute(command: Command) -> None:
            assert scheduler is not None
            seen.append((command, scheduler.state))

        inverter = FakeInverter(on_execute=on_execute)
        scheduler = _scheduler(event_log, inverter, inner_iterations=1)

        assert scheduler.state is SchedulerState.IDLE
        await scheduler.run_cycle()

        assert seen == [
            (Command.QPIGS, SchedulerState.INNER_PASS),
            (Command.QMOD, SchedulerState.OUTER_FINALIZE),
            (Command.QPIWS, SchedulerState.OUTER_FINALIZE),
            (Command.QPIRI, SchedulerState.OUTER_FINALIZE),
        ]
        assert scheduler.state is SchedulerState.IDLE

    @pytest.mark.asyncio
    async def test_error_backoff_state_while_sleeping(self, event_log: EventLog) -> None:
        states: list[SchedulerState] = []
        inverter = FakeInverter(failures={1: TransportError("gone")})
        scheduler = _scheduler(event_log, inverter)

        async def sleep(seconds: float) -> None:
            states.append(scheduler.state)
            await event_log.sleep(seconds)

        scheduler._sleep = sleep
        await scheduler.run_cycle()

        assert states == [SchedulerState.ERROR_BACKOFF]
        assert scheduler.state is SchedulerState.IDLE


# ---------------------------------------------------------------------------
# Publish failures
# ---------------------------------------------------------------------------


class TestPublishFailures:
    """A broker outage drops telemetry but polling continues."""

    @pytest.mark.asyncio
    async def test_cycle_completes_when_every_publish_fails(
        self, event_log: EventLog, inverter: FakeInverter, caplog: pytest.LogCaptureFixture
    ) -> None:
        event_log.client.publish.side_effect = MqttError("Connection lost")

        with caplog.at_level(logging.ERROR, logger="mpqtt"):
            outcome = await _scheduler(event_log, inverter).run_cycle()

        assert outcome.success is True
        assert len(inverter.calls) == 5
        assert "Failed to clear error" in caplog.text
        assert [e for e in event_log.events if e[0] == "sleep"] == [
            ("sleep", 1),
            ("sleep", 1),
            ("sleep", 5),
        ]


# ---------------------------------------------------------------------------
# Health file
# ---------------------------------------------------------------------------


class TestHealthIntegration:
    """The scheduler keeps the health file in step with its passes."""

    @pytest.mark.asyncio
    async def test_success_records_passes(
        self, event_log: EventLog, inverter: FakeInverter, tmp_path: Path
    ) -> None:
        health = HealthWriter(tmp_path / "health.json")

        await _scheduler(event_log, inverter, health=health).run_cycle()

        data = json.loads((tmp_path / "health.json").read_text())
        assert data["last_inner_ts"] is not None
        assert data["last_outer_ts"] is not None
        assert data["last_error"] is None
        assert data["consecutive_errors"] == 0

    @pytest.mark.asyncio
    async def test_failures_count_until_cleared(self, event_log: EventLog, tmp_path: Path) -> None:
        health = HealthWriter(tmp_path / "health.json")
        inverter = FakeInverter(
            failures={1: TransportError("first"), 2: TransportError("second")}
        )
        scheduler = _scheduler(event_log, inverter, health=health)

        await scheduler.run_cycle()
        await scheduler.run_cycle()
        data = json.loads((tmp_path / "health.json").read_text())
        assert data["last_error"] == "second"
        assert data["consecutive_errors"] == 2

        await scheduler.run_cycle()
        data = json.loads((tmp_path / "health.json").read_text())
        assert data["last_error"] is None
        assert data["consecutive_errors"] == 0

    @pytest.mark.asyncio
    async def test_unwritable_health_file_does_not_stop_polling(
        self,
        event_log: EventLog,
        inverter: FakeInverter,
        tmp_path: Path,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        health = HealthWriter(tmp_path / "missing" / "health.json")

        with caplog.at_level(logging.WARNING, logger="mpqtt"):
            outcome = await _scheduler(event_log, inverter, health=health).run_cycle()

        assert outcome.success is True
        assert "Failed to write health file" in caplog.text


# ---------------------------------------------------------------------------
# run_forever
# ---------------------------------------------------------------------------


class TestRunForever:
    """run_forever keeps cycling through failures."""

    @pytest.mark.asyncio
    async def test_keeps_polling_after_errors(self, event_log: EventLog) -> None:
        inverter = FakeInverter(failures={1: TransportError("a"), 2: TransportError("b")})
        scheduler = _scheduler(event_log, inverter, inner_iterations=0)
        sleeps = 0

        async def sleep(seconds: float) -> None:
            nonlocal sleeps
            await event_log.sleep(seconds)
            sleeps += 1
            if sleeps == 3:
                raise _Stop

        scheduler._sleep = sleep
        with pytest.raises(_Stop):
            await scheduler.run_forever()

        assert event_log.sequence() == [
            "error(a)",
            "sleep:3",
            "error(b)",
            "sleep:3",
            "qmod",
            "qpiws",
            "qpiri",
            "outer_stats",
            "sleep:5",
        ]
