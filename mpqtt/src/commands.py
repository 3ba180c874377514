"""
PI30 command catalogue -- single source of truth.

Defines every command the agent may issue as a member of the closed
:class:`Command` enumeration. Each member carries the channel suffix its
result is published under, the request string sent to the device, and the
:class:`~mpqtt.src.models.Record` schema its response decodes into.

``QPIRI`` appears twice: the default device family answers with the full
rating schema, the alternate (phocos) family with a reduced one. Both share
the ``qpiri`` channel.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

from enum import Enum

from mpqtt.src.models import (
    DeviceMode,
    FirmwareVersion,
    GeneralStatus,
    ParallelStatus,
    ProtocolId,
    RatingInfo,
    RatingInfoReduced,
    Record,
    SerialNumber,
    WarningStatus,
)
from mpqtt.src.protocol import encode_request

MAX_PARALLEL_INDEX = 9
"""Highest unit index addressable with QPGSn."""


class Command(Enum):
    """A command the inverter understands, with its response schema.

    Attributes:
        suffix: Telemetry channel suffix for the decoded result.
        request: ASCII request string sent to the device.
        schema: Record model the response payload decodes into.
    """

    QID = ("qid", "QID", SerialNumber)
    QPI = ("qpi", "QPI", ProtocolId)
    QVFW = ("qvfw", "QVFW", FirmwareVersion)
    QMOD = ("qmod", "QMOD", DeviceMode)
    QPIWS = ("qpiws", "QPIWS", WarningStatus)
    QPIRI = ("qpiri", "QPIRI", RatingInfo)
    QPIRI_REDUCED = ("qpiri", "QPIRI", RatingInfoReduced)
    QPIGS = ("qpigs", "QPIGS", GeneralStatus)
    QPGS0 = ("qpgs0", "QPGS0", ParallelStatus)
    QPGS1 = ("qpgs1", "QPGS1", ParallelStatus)
    QPGS2 = ("qpgs2", "QPGS2", ParallelStatus)
    QPGS3 = ("qpgs3", "QPGS3", ParallelStatus)
    QPGS4 = ("qpgs4", "QPGS4", ParallelStatus)
    QPGS5 = ("qpgs5", "QPGS5", ParallelStatus)
    QPGS6 = ("qpgs6", "QPGS6", ParallelStatus)
    QPGS7 = ("qpgs7", "QPGS7", ParallelStatus)
    QPGS8 = ("qpgs8", "QPGS8", ParallelStatus)
    QPGS9 = ("qpgs9", "QPGS9", ParallelStatus)

    def __init__(self, suffix: str, request: str, schema: type[Record]) -> None:
        self.suffix = suffix
        self.request = request
        self.schema = schema

    def encode(self) -> bytes:
        """Return the framed request bytes for this command."""
        return encode_request(self.request)

    def decode(self, payload: str) -> Record:
        """Decode a validated response payload with this command's schema."""
        return self.schema.from_payload(payload)

    @classmethod
    def qpgs(cls, index: int) -> Command:
        """Return the QPGSn member for parallel unit *index* (0-9).

        Raises:
            ValueError: If *index* is outside 0-9.
        """
        if not 0 <= index <= MAX_PARALLEL_INDEX:
            raise ValueError(f"QPGS index must be between 0 and {MAX_PARALLEL_INDEX}, got {index}")
        return cls[f"QPGS{index}"]
