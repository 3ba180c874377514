"""
Shared test fixtures for the agent test suite.

All ``MPQTT_`` environment variables are cleaned before each test, and the
working directory is moved to tmp_path so no stray config.yaml or .env file
is loaded by Pydantic BaseSettings.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from mpqtt.tests.fakes import EventLog, FakeInverter


@pytest.fixture(autouse=True)
def _clean_mpqtt_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all MPQTT_ env vars and isolate from config files before each test."""
    for var in list(os.environ):
        if var.startswith("MPQTT_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_full(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set every setting through environment variables.

    Returns the dict of env var names to values for assertion convenience.
    """
    env = {
        "MPQTT_DEBUG": "true",
        "MPQTT_MODE": "phocos",
        "MPQTT_INVERTER_COUNT": "3",
        "MPQTT_OUTER_DELAY": "30",
        "MPQTT_INNER_DELAY": "2",
        "MPQTT_ERROR_DELAY": "15",
        "MPQTT_INNER_ITERATIONS": "4",
        "MPQTT_INVERTER__PATH": "/dev/ttyUSB0",
        "MPQTT_INVERTER__TRANSPORT": "serial",
        "MPQTT_INVERTER__BAUD_RATE": "9600",
        "MPQTT_MQTT__HOST": "10.0.0.5",
        "MPQTT_MQTT__PORT": "8883",
        "MPQTT_MQTT__USERNAME": "solar",
        "MPQTT_MQTT__PASSWORD": "hunter2",
        "MPQTT_MQTT__CLIENT_ID": "mpqtt-test",
        "MPQTT_MQTT__TOPIC": "home/inverter/",
        "MPQTT_HEALTH_PATH": "/tmp/mpqtt-health.json",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required settings; everything else uses defaults."""
    env = {
        "MPQTT_INVERTER__PATH": "/dev/hidraw0",
        "MPQTT_MQTT__HOST": "broker.local",
        "MPQTT_MQTT__TOPIC": "mpqtt",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def event_log() -> EventLog:
    """Ordered publish/sleep recorder with a fake clock."""
    return EventLog()


@pytest.fixture()
def inverter() -> FakeInverter:
    """Inverter double that answers every command successfully."""
    return FakeInverter()
