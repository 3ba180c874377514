"""
PI30 wire protocol framing for Voltronic/MasterPower inverters.

Requests are ASCII command strings followed by a two-byte CRC and a carriage
return. Responses start with ``(``, carry a space-separated ASCII payload and
end with a two-byte CRC and a carriage return. The CRC is CRC-16/XMODEM
computed nibble-wise; any CRC byte that collides with a framing character
(``(``, ``\\r``, ``\\n``) or NUL is bumped by one, both by the device and by us.

Operations:
- crc16(data): CRC of a byte string with reserved-byte adjustment.
- encode_request(command): Build the request frame for a command string.
- decode_response(frame): Validate a response frame and return its payload.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class InverterError(Exception):
    """Base class for every failure of a command round-trip."""


class TransportError(InverterError):
    """The device could not be opened, written, or read in time."""


class MalformedResponseError(InverterError):
    """The device answered with a frame that cannot be parsed."""


class ChecksumError(InverterError):
    """The response CRC does not match its payload."""


class CommandRejectedError(InverterError):
    """The device answered ``NAK`` to a request."""


# ---------------------------------------------------------------------------
# CRC
# ---------------------------------------------------------------------------

_CRC_TABLE: tuple[int, ...] = (
    0x0000, 0x1021, 0x2042, 0x3063,
    0x4084, 0x50A5, 0x60C6, 0x70E7,
    0x8108, 0x9129, 0xA14A, 0xB16B,
    0xC18C, 0xD1AD, 0xE1CE, 0xF1EF,
)

_RESERVED_CRC_BYTES = frozenset((0x28, 0x0D, 0x0A, 0x00))

FRAME_START = b"("
FRAME_END = b"\r"
NAK_PAYLOAD = "NAK"


def crc16(data: bytes) -> bytes:
    """Return the two-byte PI30 CRC (high byte first) for *data*."""
    crc = 0
    for byte in data:
        for nibble in (byte >> 4, byte & 0x0F):
            da = (crc >> 12) & 0x0F
            crc = (crc << 4) & 0xFFFF
            crc ^= _CRC_TABLE[da ^ nibble]

    hi = (crc >> 8) & 0xFF
    lo = crc & 0xFF
    if hi in _RESERVED_CRC_BYTES:
        hi += 1
    if lo in _RESERVED_CRC_BYTES:
        lo += 1
    return bytes((hi, lo))


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


def encode_request(command: str) -> bytes:
    """Build the request frame for *command*.

    Args:
        command: ASCII command string, e.g. ``"QPIGS"`` or ``"QPGS1"``.

    Returns:
        ``command + crc + b"\\r"``.
    """
    body = command.encode("ascii")
    return body + crc16(body) + FRAME_END


def decode_response(frame: bytes) -> str:
    """Validate a raw response frame and return its ASCII payload.

    Args:
        frame: Bytes read from the device, terminated by ``\\r``.  Anything
            after the first ``\\r`` is ignored.

    Returns:
        The payload between ``(`` and the CRC, decoded as ASCII.

    Raises:
        MalformedResponseError: If the frame is too short, lacks the start
            marker, or is not ASCII.
        ChecksumError: If the trailing CRC does not match.
        CommandRejectedError: If the device answered ``NAK``.
    """
    end = frame.find(FRAME_END)
    if end != -1:
        frame = frame[:end]

    # "(" + at least zero payload bytes + 2 CRC bytes
    if len(frame) < 3:
        raise MalformedResponseError(f"Response too short: {frame!r}")
    if not frame.startswith(FRAME_START):
        raise MalformedResponseError(f"Response missing start marker: {frame!r}")

    body, received_crc = frame[:-2], frame[-2:]
    expected_crc = crc16(body)
    if received_crc != expected_crc:
        # Some firmware answers NAK with a stale CRC; report the rejection.
        if body[1:] == NAK_PAYLOAD.encode("ascii"):
            raise CommandRejectedError("Device rejected command (NAK)")
        raise ChecksumError(
            f"CRC mismatch: expected {expected_crc.hex()}, got {received_crc.hex()}"
        )

    try:
        payload = body[1:].decode("ascii")
    except UnicodeDecodeError as exc:
        raise MalformedResponseError(f"Response is not ASCII: {frame!r}") from exc

    if payload == NAK_PAYLOAD:
        raise CommandRejectedError("Device rejected command (NAK)")
    return payload
