"""
Agent entrypoint: bootstrap the broker connection and inverter, then poll.

Startup order:
1. Load settings -- missing or invalid configuration exits with status 1
   before any broker connection is attempted.
2. Configure structured JSON logging at the level chosen by ``debug``.
3. Connect to the MQTT broker (failure exits with status 1). Later drops
   are recovered by the sink's connection, which reconnects on demand.
4. Publish Home Assistant discovery configs.
5. Open the inverter device, retrying with backoff; if every attempt fails
   the error is published and the process exits with status 1.
6. Clear any stale error, run the initialization sequence until it succeeds.
7. Hand over to the scheduler, which runs forever.

There is no in-band shutdown: the agent runs until the process is killed.

CHANGELOG:
- 2026-10-17: Replace poll/upload loops with MQTT agent bootstrap
- 2026-10-17: Keep a reconnecting broker connection; reject malformed YAML

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import yaml
from aiomqtt import Client, MqttError
from pydantic import ValidationError

from mpqtt.src.config import Settings
from mpqtt.src.discovery import run_mqtt_discovery
from mpqtt.src.health import HealthWriter
from mpqtt.src.initializer import initialize_with_retry
from mpqtt.src.inverter import open_inverter
from mpqtt.src.protocol import TransportError
from mpqtt.src.scheduler import Scheduler
from mpqtt.src.sink import MqttConnection, TelemetrySink

if TYPE_CHECKING:
    from mpqtt.src.config import MqttSettings

logger = logging.getLogger(__name__)

PACKAGE_LOGGER = "mpqtt"


class BootstrapError(Exception):
    """A startup step failed and the agent cannot run."""


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class _JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(*, debug: bool = False) -> None:
    """Configure structured JSON logging for the agent.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    Third-party libraries log at WARNING and above; the agent's own loggers
    log at DEBUG when *debug* is set and INFO otherwise. Safe to call again
    once settings are known.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.WARNING)
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG if debug else logging.INFO)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: Settings) -> None:
    """Log a config summary at startup, excluding secrets.

    The broker password is replaced by a fingerprint.
    """
    logger.info(
        "Agent starting with config: "
        "inverter_path=%s, inverter_transport=%s, mode=%s, inverter_count=%d, "
        "inner_iterations=%d, inner_delay=%ds, outer_delay=%ds, error_delay=%ds, "
        "mqtt_host=%s, mqtt_port=%d, mqtt_username=%s, mqtt_client_id=%s, "
        "mqtt_topic=%s, debug=%s, mqtt_password_masked=%s",
        settings.inverter.path,
        settings.inverter.transport.value,
        settings.mode.value,
        settings.inverter_count,
        settings.inner_iterations,
        settings.inner_delay,
        settings.outer_delay,
        settings.error_delay,
        settings.mqtt.host,
        settings.mqtt.port,
        settings.mqtt.username,
        settings.mqtt.client_id,
        settings.mqtt.topic,
        settings.debug,
        _masked_token(settings.mqtt.password),
    )


# ---------------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """Load and validate settings.

    Raises:
        BootstrapError: If the configuration is missing or invalid.
    """
    try:
        return Settings()
    except (ValidationError, yaml.YAMLError) as exc:
        raise BootstrapError(f"Error loading configuration: {exc}") from exc


def build_mqtt_client(mqtt: MqttSettings) -> Client:
    """Create (but do not connect) the aiomqtt client."""
    return Client(
        mqtt.host,
        port=mqtt.port,
        username=mqtt.username or None,
        password=mqtt.password or None,
        identifier=mqtt.client_id,
        keepalive=mqtt.keepalive_s,
    )


async def run_agent(connection: MqttConnection, settings: Settings) -> None:
    """Run everything that needs a connected broker; never returns normally.

    Raises:
        BootstrapError: If the inverter cannot be opened.
    """
    sink = TelemetrySink(connection, settings.mqtt.topic)
    await run_mqtt_discovery(sink, settings)

    try:
        inverter = await open_inverter(settings.inverter)
    except TransportError as exc:
        await sink.publish_error(str(exc))
        raise BootstrapError(f"Could not open inverter communication: {exc}") from exc

    try:
        await sink.clear_error()
        await initialize_with_retry(inverter, sink, base_delay_s=settings.error_delay)

        health = HealthWriter(settings.health_path) if settings.health_path else None
        scheduler = Scheduler(inverter=inverter, sink=sink, settings=settings, health=health)
        await scheduler.run_forever()
    finally:
        inverter.close()


async def async_main() -> int:
    """Async entrypoint; returns the process exit status."""
    configure_logging()
    try:
        settings = load_settings()
    except BootstrapError as exc:
        logger.error("%s", exc)
        return 1

    configure_logging(debug=settings.debug)
    if settings.debug:
        logger.info("Enabled debug output")
    log_config_summary(settings)

    logger.info("Connecting to MQTT Broker at: %s:%d", settings.mqtt.host, settings.mqtt.port)
    connection = MqttConnection(lambda: build_mqtt_client(settings.mqtt))
    try:
        await connection.connect()
    except MqttError as exc:
        logger.error("MQTT broker connection failed: %s", exc)
        return 1
    logger.info("Connected to MQTT Broker")

    try:
        await run_agent(connection, settings)
    except BootstrapError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        await connection.close()
    return 0


def main() -> None:
    """Synchronous entrypoint for the agent."""
    try:
        sys.exit(asyncio.run(async_main()))
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")


if __name__ == "__main__":
    main()
