"""
Home Assistant MQTT discovery for the agent's telemetry channels.

Publishes one retained sensor config per numeric field of every channel the
scheduler will publish for the configured mode, plus the device mode, the
two heartbeat stats and the error channel. Run once at startup, before the
scheduler starts; never re-run afterwards.

Config topics follow ``{prefix}/sensor/{node_name}/{object_id}/config``.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import types
import typing
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from mpqtt.src.scheduler import (
    INNER_STATS_SUFFIX,
    OUTER_STATS_SUFFIX,
    build_inner_plan,
    build_outer_plan,
)
from mpqtt.src.sink import ERROR_SUFFIX

if TYPE_CHECKING:
    from mpqtt.src.config import Settings
    from mpqtt.src.models import Record
    from mpqtt.src.sink import TelemetrySink

logger = logging.getLogger(__name__)

MANUFACTURER = "MasterPower"


@dataclass(frozen=True, slots=True)
class SensorDef:
    """One Home Assistant sensor bound to a field of a telemetry channel.

    Attributes:
        suffix: Telemetry channel suffix carrying the value.
        field: JSON field within the payload, or ``None`` for raw payloads.
        unit: Unit of measurement, empty when unitless.
        device_class: Home Assistant device class, if any.
    """

    suffix: str
    field: str | None
    unit: str = ""
    device_class: str | None = None

    @property
    def object_id(self) -> str:
        if self.field is None:
            return self.suffix
        return f"{self.suffix}_{self.field}"


# Ordered: the first matching fragment wins.
_UNIT_RULES: tuple[tuple[str, str, str | None], ...] = (
    ("apparent_power", "VA", "apparent_power"),
    ("power", "W", "power"),
    ("voltage", "V", "voltage"),
    ("current", "A", "current"),
    ("frequency", "Hz", "frequency"),
    ("temperature", "°C", "temperature"),
    ("capacity", "%", "battery"),
    ("percent", "%", None),
)


def _unit_for(field: str) -> tuple[str, str | None]:
    for fragment, unit, device_class in _UNIT_RULES:
        if fragment in field:
            return unit, device_class
    return "", None


def _is_numeric(annotation: Any) -> bool:
    if annotation in (int, float):
        return True
    if isinstance(annotation, types.UnionType) or typing.get_origin(annotation) is typing.Union:
        args = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        return bool(args) and all(arg in (int, float) for arg in args)
    return False


def _record_sensors(suffix: str, schema: type[Record]) -> list[SensorDef]:
    sensors = []
    for name, field in schema.model_fields.items():
        if not _is_numeric(field.annotation):
            continue
        unit, device_class = _unit_for(name)
        sensors.append(SensorDef(suffix, name, unit, device_class))
    return sensors


def build_sensors(settings: Settings) -> list[SensorDef]:
    """Return every sensor to announce for *settings*.

    Channels mirror exactly what the scheduler publishes: suppressed
    parallel unit 0 is not announced.
    """
    sensors: list[SensorDef] = []
    for step in (*build_inner_plan(settings), *build_outer_plan(settings)):
        if not step.publish:
            continue
        if step.command.suffix == "qmod":
            sensors.append(SensorDef("qmod", "mode"))
            continue
        sensors.extend(_record_sensors(step.command.suffix, step.command.schema))
    sensors.append(SensorDef(INNER_STATS_SUFFIX, "update_duration", "ms", "duration"))
    sensors.append(SensorDef(OUTER_STATS_SUFFIX, "update_duration", "ms", "duration"))
    sensors.append(SensorDef(ERROR_SUFFIX, None))
    return sensors


def sensor_config(sensor: SensorDef, sink: TelemetrySink, settings: Settings) -> dict[str, Any]:
    """Build the Home Assistant discovery payload for *sensor*."""
    discovery = settings.mqtt.discovery
    template = "{{ value }}" if sensor.field is None else f"{{{{ value_json.{sensor.field} }}}}"
    cfg: dict[str, Any] = {
        "name": sensor.object_id.replace("_", " ").title(),
        "unique_id": f"{discovery.device_id}_{sensor.object_id}",
        "state_topic": sink.topic_for(sensor.suffix),
        "value_template": template,
        "device": {
            "identifiers": [discovery.device_id],
            "name": discovery.device_name,
            "manufacturer": MANUFACTURER,
            "model": settings.mode.value,
        },
    }
    if sensor.unit:
        cfg["unit_of_measurement"] = sensor.unit
        cfg["state_class"] = "measurement"
    if sensor.device_class:
        cfg["device_class"] = sensor.device_class
    return cfg


async def run_mqtt_discovery(sink: TelemetrySink, settings: Settings) -> int:
    """Publish retained discovery configs for all announced sensors.

    Publishing is best-effort like all telemetry: a config that cannot be
    delivered is logged by the sink and skipped.

    Returns:
        The number of configs the broker accepted.
    """
    discovery = settings.mqtt.discovery
    sensors = build_sensors(settings)
    published = 0
    for sensor in sensors:
        topic = f"{discovery.prefix}/sensor/{discovery.node_name}/{sensor.object_id}/config"
        payload = json.dumps(sensor_config(sensor, sink, settings))
        if await sink.publish_raw(topic, payload, retain=True):
            published += 1
    logger.info("MQTT discovery published %d/%d sensor configs", published, len(sensors))
    return published
