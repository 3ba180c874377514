"""
Agent configuration loaded from environment variables and a YAML file.

Uses Pydantic BaseSettings for loading and validation. Values are resolved
from (highest priority first) constructor arguments, ``MPQTT_``-prefixed
environment variables (nested with ``__``, e.g. ``MPQTT_MQTT__HOST``), a
``.env`` file, and finally a YAML file -- ``config.yaml`` in the working
directory unless ``MPQTT_CONFIG_FILE`` names another path.

Settings are frozen: they are read once at startup and never reloaded.

CHANGELOG:
- 2026-10-17: Initial creation
- 2026-10-17: Reject MQTT wildcards in the topic prefix

TODO:
- None
"""

from __future__ import annotations

import os
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_CONFIG_FILE = "config.yaml"
CONFIG_FILE_ENV_VAR = "MPQTT_CONFIG_FILE"


def config_file_path() -> str:
    """Return the YAML config path, honouring ``MPQTT_CONFIG_FILE``."""
    return os.environ.get(CONFIG_FILE_ENV_VAR, DEFAULT_CONFIG_FILE)


class Mode(str, Enum):
    """Device family, selecting which command subset applies.

    ``DEFAULT`` polls the aggregate QPIGS status and the full QPIRI schema.
    ``PHOCOS`` polls per-unit QPGSn status and the reduced QPIRI schema.
    """

    DEFAULT = "default"
    PHOCOS = "phocos"


class Transport(str, Enum):
    """How the inverter device node is driven."""

    HIDRAW = "hidraw"
    SERIAL = "serial"


class InverterSettings(BaseModel):
    """Device transport settings.

    Attributes:
        path: Device node, e.g. ``/dev/hidraw0`` or ``/dev/ttyUSB0``.
        transport: ``hidraw`` for USB HID nodes, ``serial`` for RS232 ports.
        baud_rate: Serial line speed (serial transport only).
        timeout_s: Seconds to wait for a complete response.
        open_retry_attempts: Attempts to open the device at startup.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    transport: Transport = Transport.HIDRAW
    baud_rate: int = 2400
    timeout_s: float = 5.0
    open_retry_attempts: int = 5

    @field_validator("timeout_s")
    @classmethod
    def timeout_must_be_positive(cls, v: float) -> float:
        """Validate the response timeout is positive."""
        if v <= 0:
            raise ValueError("inverter.timeout_s must be > 0")
        return v

    @field_validator("open_retry_attempts")
    @classmethod
    def open_retry_attempts_must_be_positive(cls, v: int) -> int:
        """Validate at least one open attempt is made."""
        if v < 1:
            raise ValueError("inverter.open_retry_attempts must be >= 1")
        return v


class MqttDiscoverySettings(BaseModel):
    """Home Assistant discovery metadata."""

    model_config = ConfigDict(frozen=True)

    prefix: str = "homeassistant"
    node_name: str = "mpqtt"
    device_name: str = "MasterPower Inverter"
    device_id: str = "mpqtt"


class MqttSettings(BaseModel):
    """Broker connection settings.

    Attributes:
        host: Broker hostname or IP address.
        port: Broker TCP port.
        username: Username, empty for anonymous access.
        password: Password, empty for anonymous access.
        client_id: MQTT client identifier.
        topic: Topic prefix; telemetry goes to ``{topic}/{suffix}``.
        keepalive_s: MQTT keep-alive interval in seconds.
        discovery: Home Assistant discovery metadata.
    """

    model_config = ConfigDict(frozen=True)

    host: str
    port: int = 1883
    username: str = ""
    password: str = ""
    client_id: str = "mpqtt"
    topic: str
    keepalive_s: int = 5
    discovery: MqttDiscoverySettings = Field(default_factory=MqttDiscoverySettings)

    @field_validator("port")
    @classmethod
    def port_must_be_valid(cls, v: int) -> int:
        """Validate broker port is in valid range."""
        if v < 1 or v > 65535:
            raise ValueError("mqtt.port must be between 1 and 65535")
        return v

    @field_validator("topic")
    @classmethod
    def topic_must_be_non_empty(cls, v: str) -> str:
        """Strip trailing slashes; reject an empty or wildcard topic prefix."""
        v = v.strip().rstrip("/")
        if not v:
            raise ValueError("mqtt.topic must not be empty")
        if "+" in v or "#" in v:
            raise ValueError("mqtt.topic must not contain MQTT wildcards '+' or '#'")
        return v


class Settings(BaseSettings):
    """Agent configuration.

    Attributes:
        debug: Verbose logging; also polls (and publishes) parallel unit 0.
        mode: Device family selecting the command subset.
        inverter_count: Number of parallel units polled in phocos mode (0-9).
        outer_delay: Seconds to sleep after each outer pass.
        inner_delay: Seconds to sleep after each inner pass.
        error_delay: Seconds to sleep after a failed pass.
        inner_iterations: Inner passes per outer pass.
        inverter: Device transport settings.
        mqtt: Broker connection settings.
        health_path: Optional path of a JSON liveness file.
    """

    debug: bool = False
    mode: Mode = Mode.DEFAULT
    inverter_count: int = 1
    outer_delay: int = 60
    inner_delay: int = 10
    error_delay: int = 10
    inner_iterations: int = 6
    inverter: InverterSettings
    mqtt: MqttSettings
    health_path: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="MPQTT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    @field_validator("inverter_count")
    @classmethod
    def inverter_count_must_be_valid(cls, v: int) -> int:
        """Validate the parallel unit count fits the QPGS0-QPGS9 range."""
        if v < 0 or v > 9:
            raise ValueError("inverter_count must be between 0 and 9")
        return v

    @field_validator("outer_delay", "inner_delay", "error_delay", "inner_iterations")
    @classmethod
    def timing_must_be_non_negative(cls, v: int) -> int:
        """Validate delays and iteration counts are non-negative."""
        if v < 0:
            raise ValueError("delays and inner_iterations must be >= 0")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=config_file_path()),
        )
