"""
Pydantic models for decoded inverter responses and cycle statistics.

Every PI30 response payload is a run of space-separated ASCII tokens whose
position determines their meaning. :class:`Record` maps tokens onto model
fields in declaration order and lets pydantic coerce them, so each schema
below is just an ordered field list. Trailing fields with a default are
optional: older firmware omits them and newer firmware may append tokens we
do not know about, which are ignored.

Serialization is ``model_dump_json()`` throughout, giving a deterministic
payload for the telemetry sink.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, ValidationError, computed_field, field_validator

from mpqtt.src.protocol import MalformedResponseError

# ---------------------------------------------------------------------------
# Base record
# ---------------------------------------------------------------------------


class Record(BaseModel):
    """A decoded response from one command execution."""

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_payload(cls, payload: str) -> Self:
        """Decode a whitespace-separated response payload positionally.

        Args:
            payload: Response payload as returned by
                :func:`~mpqtt.src.protocol.decode_response`.

        Raises:
            MalformedResponseError: If required tokens are missing or a token
                cannot be coerced to its field type.
        """
        tokens = payload.split()
        names = list(cls.model_fields)
        required = sum(1 for field in cls.model_fields.values() if field.is_required())
        if len(tokens) < required:
            raise MalformedResponseError(
                f"{cls.__name__}: expected at least {required} fields, got {len(tokens)}"
            )
        return cls._validate(dict(zip(names, tokens)))

    @classmethod
    def _validate(cls, data: dict[str, object]) -> Self:
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise MalformedResponseError(f"{cls.__name__}: {exc}") from exc


def _check_bits(value: str, width: int) -> str:
    if len(value) != width or any(bit not in "01" for bit in value):
        raise ValueError(f"expected {width} status bits, got {value!r}")
    return value


# ---------------------------------------------------------------------------
# Identity queries (initialization sequence)
# ---------------------------------------------------------------------------


class SerialNumber(Record):
    """QID: device serial number."""

    serial_number: str

    @classmethod
    def from_payload(cls, payload: str) -> Self:
        serial = payload.strip()
        if not serial:
            raise MalformedResponseError("SerialNumber: empty payload")
        return cls._validate({"serial_number": serial})


class ProtocolId(Record):
    """QPI: protocol identifier, e.g. ``PI30``."""

    protocol_id: str

    @classmethod
    def from_payload(cls, payload: str) -> Self:
        value = payload.strip()
        if not value.startswith("PI"):
            raise MalformedResponseError(f"ProtocolId: unexpected payload {payload!r}")
        return cls._validate({"protocol_id": value})


class FirmwareVersion(Record):
    """QVFW: main CPU firmware version."""

    version: str

    @classmethod
    def from_payload(cls, payload: str) -> Self:
        prefix, sep, version = payload.strip().partition(":")
        if not sep or not prefix.startswith("VERFW") or not version:
            raise MalformedResponseError(f"FirmwareVersion: unexpected payload {payload!r}")
        return cls._validate({"version": version})


# ---------------------------------------------------------------------------
# Outer-tier queries
# ---------------------------------------------------------------------------


class DeviceModeKind(str, Enum):
    """Operating modes reported by QMOD (and the QPGSn work mode)."""

    POWER_ON = "PowerOn"
    STANDBY = "Standby"
    LINE = "Line"
    BATTERY = "Battery"
    FAULT = "Fault"
    POWER_SAVING = "PowerSaving"
    SHUTDOWN = "Shutdown"


_MODE_CODES: dict[str, DeviceModeKind] = {
    "P": DeviceModeKind.POWER_ON,
    "S": DeviceModeKind.STANDBY,
    "L": DeviceModeKind.LINE,
    "B": DeviceModeKind.BATTERY,
    "F": DeviceModeKind.FAULT,
    "H": DeviceModeKind.POWER_SAVING,
    "D": DeviceModeKind.SHUTDOWN,
}


class DeviceMode(Record):
    """QMOD: current operating mode."""

    mode: DeviceModeKind

    @classmethod
    def from_payload(cls, payload: str) -> Self:
        code = payload.strip()
        kind = _MODE_CODES.get(code)
        if kind is None:
            raise MalformedResponseError(f"DeviceMode: unknown mode code {code!r}")
        return cls(mode=kind)


_WARNING_BITS: tuple[str | None, ...] = (
    None,
    "inverter_fault",
    "bus_over",
    "bus_under",
    "bus_soft_fail",
    "line_fail",
    "opv_short",
    "inverter_voltage_too_low",
    "inverter_voltage_too_high",
    "over_temperature",
    "fan_locked",
    "battery_voltage_high",
    "battery_low_alarm",
    None,
    "battery_under_shutdown",
    None,
    "over_load",
    "eeprom_fault",
    "inverter_over_current",
    "inverter_soft_fail",
    "self_test_fail",
    "op_dc_voltage_over",
    "battery_open",
    "current_sensor_fail",
    "battery_short",
    "power_limit",
    "pv_voltage_high",
    "mppt_overload_fault",
    "mppt_overload_warning",
    "battery_too_low_to_charge",
    None,
    None,
)
"""QPIWS bit positions a0..a31; ``None`` marks reserved bits."""


class WarningStatus(Record):
    """QPIWS: warning and fault flags."""

    inverter_fault: bool
    bus_over: bool
    bus_under: bool
    bus_soft_fail: bool
    line_fail: bool
    opv_short: bool
    inverter_voltage_too_low: bool
    inverter_voltage_too_high: bool
    over_temperature: bool
    fan_locked: bool
    battery_voltage_high: bool
    battery_low_alarm: bool
    battery_under_shutdown: bool
    over_load: bool
    eeprom_fault: bool
    inverter_over_current: bool
    inverter_soft_fail: bool
    self_test_fail: bool
    op_dc_voltage_over: bool
    battery_open: bool
    current_sensor_fail: bool
    battery_short: bool
    power_limit: bool
    pv_voltage_high: bool
    mppt_overload_fault: bool
    mppt_overload_warning: bool
    battery_too_low_to_charge: bool

    @classmethod
    def from_payload(cls, payload: str) -> Self:
        bits = payload.strip()
        if len(bits) < len(_WARNING_BITS) or any(bit not in "01" for bit in bits):
            raise MalformedResponseError(f"WarningStatus: unexpected payload {payload!r}")
        return cls._validate(
            {name: bit == "1" for name, bit in zip(_WARNING_BITS, bits) if name is not None}
        )


class RatingInfoReduced(Record):
    """QPIRI as answered by the alternate (phocos) device family.

    These units stop after the output mode field; everything from the battery
    re-discharge voltage onwards is absent.
    """

    grid_rating_voltage: float
    grid_rating_current: float
    ac_output_rating_voltage: float
    ac_output_rating_frequency: float
    ac_output_rating_current: float
    ac_output_rating_apparent_power: int
    ac_output_rating_active_power: int
    battery_rating_voltage: float
    battery_recharge_voltage: float
    battery_under_voltage: float
    battery_bulk_voltage: float
    battery_float_voltage: float
    battery_type: int
    max_ac_charging_current: int
    max_charging_current: int
    input_voltage_range: int
    output_source_priority: int
    charger_source_priority: int
    parallel_max_num: str
    machine_type: str
    topology: int
    output_mode: int


class RatingInfo(RatingInfoReduced):
    """QPIRI: full rating information."""

    battery_redischarge_voltage: float
    pv_ok_condition_for_parallel: int
    pv_power_balance: int


# ---------------------------------------------------------------------------
# Inner-tier queries
# ---------------------------------------------------------------------------


class GeneralStatus(Record):
    """QPIGS: general status parameters of a single inverter.

    ``device_status`` holds bits b7..b0 as sent by the device.
    """

    grid_voltage: float
    grid_frequency: float
    ac_output_voltage: float
    ac_output_frequency: float
    ac_output_apparent_power: int
    ac_output_active_power: int
    output_load_percent: int
    bus_voltage: int
    battery_voltage: float
    battery_charging_current: int
    battery_capacity: int
    inverter_heat_sink_temperature: int
    pv_input_current: float
    pv_input_voltage: float
    battery_voltage_from_scc: float
    battery_discharge_current: int
    device_status: str
    battery_voltage_offset_for_fans_on: int | None = None
    eeprom_version: str | None = None
    pv_charging_power: int | None = None
    device_status_2: str | None = None

    @field_validator("device_status")
    @classmethod
    def _device_status_bits(cls, v: str) -> str:
        return _check_bits(v, 8)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def load_on(self) -> bool:
        return self.device_status[3] == "1"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def charging_on(self) -> bool:
        return self.device_status[5] == "1"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def scc_charging_on(self) -> bool:
        return self.device_status[6] == "1"

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ac_charging_on(self) -> bool:
        return self.device_status[7] == "1"


class ParallelStatus(Record):
    """QPGSn: status of unit *n* in a parallel installation."""

    parallel_num_exists: int
    serial_number: str
    work_mode: str
    fault_code: str
    grid_voltage: float
    grid_frequency: float
    ac_output_voltage: float
    ac_output_frequency: float
    ac_output_apparent_power: int
    ac_output_active_power: int
    load_percentage: int
    battery_voltage: float
    battery_charging_current: int
    battery_capacity: int
    pv_input_voltage: float
    total_charging_current: int
    total_ac_output_apparent_power: int
    total_output_active_power: int
    total_ac_output_percentage: int
    inverter_status: str
    output_mode: int | None = None
    charger_source_priority: int | None = None
    max_charger_current: int | None = None
    max_charger_range: int | None = None
    max_ac_charger_current: int | None = None
    pv_input_current: float | None = None
    battery_discharge_current: int | None = None

    @field_validator("inverter_status")
    @classmethod
    def _inverter_status_bits(cls, v: str) -> str:
        return _check_bits(v, 8)


# ---------------------------------------------------------------------------
# Heartbeat
# ---------------------------------------------------------------------------


class CycleStats(BaseModel):
    """Elapsed time of one inner or outer pass.

    Attributes:
        update_duration: Pass duration in whole milliseconds, measured on a
            monotonic clock.
    """

    model_config = ConfigDict(frozen=True)

    update_duration: int
