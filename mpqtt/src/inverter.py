"""
Inverter command executor over a hidraw or serial transport.

Owns the device handle for the lifetime of the process and runs one PI30
request/response round-trip at a time: the device only tolerates a single
outstanding request. Blocking device I/O runs in a worker thread so the
event loop (and with it the MQTT keep-alive) stays responsive, but every
call is awaited before the next one is issued.

The executor never retries; the scheduler owns all retry and backoff policy.
Every failure surfaces as an :class:`~mpqtt.src.protocol.InverterError`.

Opening the device at startup is retried with exponential backoff (capped at
MAX_BACKOFF_S) for a bounded number of attempts.

CHANGELOG:
- 2026-10-17: Initial creation
- 2026-10-17: Discard stale hidraw input before each request

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import os
import select
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Protocol

import serial

from mpqtt.src.config import Transport
from mpqtt.src.protocol import FRAME_END, TransportError, decode_response

if TYPE_CHECKING:
    from mpqtt.src.commands import Command
    from mpqtt.src.config import InverterSettings
    from mpqtt.src.models import Record

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_BACKOFF_S: float = 1.0
"""Initial backoff delay in seconds after the first open failure."""

MAX_BACKOFF_S: float = 60.0
"""Maximum backoff delay in seconds (cap for exponential growth)."""

HID_REPORT_SIZE: int = 8
"""USB HID report length; hidraw writes and reads happen in these chunks."""

MAX_FRAME_BYTES: int = 512
"""Upper bound on a response frame; longer reads are treated as garbage."""


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class DeviceTransport(Protocol):
    """Duplex byte channel to the inverter."""

    def write(self, data: bytes) -> None: ...

    def read_frame(self, timeout_s: float) -> bytes: ...

    def close(self) -> None: ...


class HidrawTransport:
    """Raw USB HID device node (``/dev/hidrawN``).

    The node is opened read/write without any terminal setup. Requests are
    written as 8-byte HID reports; responses arrive in 8-byte reports padded
    with NUL bytes, which are stripped. Anything still queued when a request
    is written belongs to an earlier exchange and is discarded first.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._fd = os.open(path, os.O_RDWR)

    def write(self, data: bytes) -> None:
        self._discard_pending()
        for offset in range(0, len(data), HID_REPORT_SIZE):
            os.write(self._fd, data[offset : offset + HID_REPORT_SIZE])

    def _discard_pending(self) -> None:
        """Drop reports left over from an earlier, timed-out exchange."""
        discarded = 0
        while select.select([self._fd], [], [], 0)[0]:
            chunk = os.read(self._fd, HID_REPORT_SIZE)
            if not chunk:
                break
            discarded += len(chunk)
        if discarded:
            logger.debug("Discarded %d stale bytes from %s", discarded, self.path)

    def read_frame(self, timeout_s: float) -> bytes:
        deadline = time.monotonic() + timeout_s
        buf = bytearray()
        while FRAME_END not in buf:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TransportError(f"Timed out waiting for response from {self.path}")
            ready, _, _ = select.select([self._fd], [], [], remaining)
            if not ready:
                continue
            chunk = os.read(self._fd, HID_REPORT_SIZE)
            if not chunk:
                raise TransportError(f"Device {self.path} closed")
            buf += chunk.replace(b"\x00", b"")
            if len(buf) > MAX_FRAME_BYTES:
                raise TransportError(f"Response from {self.path} exceeds {MAX_FRAME_BYTES} bytes")
        return bytes(buf)

    def close(self) -> None:
        os.close(self._fd)


class SerialTransport:
    """RS232/USB-serial port driven with pyserial (8N1)."""

    def __init__(self, path: str, baud_rate: int) -> None:
        self.path = path
        self._port = serial.Serial(
            path,
            baudrate=baud_rate,
            bytesize=serial.EIGHTBITS,
            parity=serial.PARITY_NONE,
            stopbits=serial.STOPBITS_ONE,
        )

    def write(self, data: bytes) -> None:
        # Drop stray bytes left over from an earlier, timed-out exchange.
        self._port.reset_input_buffer()
        self._port.write(data)
        self._port.flush()

    def read_frame(self, timeout_s: float) -> bytes:
        self._port.timeout = timeout_s
        data = self._port.read_until(FRAME_END, MAX_FRAME_BYTES)
        if not data.endswith(FRAME_END):
            raise TransportError(f"Timed out waiting for response from {self.path}")
        return data

    def close(self) -> None:
        self._port.close()


def open_transport(settings: InverterSettings) -> DeviceTransport:
    """Open the configured transport.

    Raises:
        OSError: If the device node cannot be opened.
        serial.SerialException: If the serial port cannot be configured.
    """
    if settings.transport is Transport.SERIAL:
        return SerialTransport(settings.path, settings.baud_rate)
    return HidrawTransport(settings.path)


# ---------------------------------------------------------------------------
# Command executor
# ---------------------------------------------------------------------------


class Inverter:
    """Sequential PI30 command executor bound to one transport.

    Args:
        transport: An open device transport; the inverter takes ownership.
        timeout_s: Seconds to wait for each response.
    """

    def __init__(self, transport: DeviceTransport, *, timeout_s: float = 5.0) -> None:
        self._transport = transport
        self._timeout_s = timeout_s

    async def execute(self, command: Command) -> Record:
        """Send *command* and return its decoded response.

        Raises:
            TransportError: On I/O failure or timeout.
            MalformedResponseError: If the response cannot be parsed.
            ChecksumError: If the response CRC is wrong.
            CommandRejectedError: If the device answers NAK.
        """
        request = command.encode()
        logger.debug("Sending %s: %r", command.name, request)
        raw = await asyncio.to_thread(self._round_trip, request)
        logger.debug("Received %s: %r", command.name, raw)
        return command.decode(decode_response(raw))

    def _round_trip(self, request: bytes) -> bytes:
        try:
            self._transport.write(request)
            return self._transport.read_frame(self._timeout_s)
        except (OSError, serial.SerialException) as exc:
            raise TransportError(f"Device I/O failed: {exc}") from exc

    def close(self) -> None:
        """Close the underlying transport."""
        self._transport.close()


async def open_inverter(
    settings: InverterSettings,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Inverter:
    """Open the inverter transport, retrying with exponential backoff.

    Args:
        settings: Device transport settings.
        sleep: Awaitable sleep, injectable for tests.

    Returns:
        A ready :class:`Inverter`.

    Raises:
        TransportError: If every attempt fails.
    """
    attempts = settings.open_retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            transport = open_transport(settings)
        except (OSError, serial.SerialException) as exc:
            if attempt == attempts:
                raise TransportError(
                    f"Could not open inverter at {settings.path} after {attempts} attempts: {exc}"
                ) from exc
            delay = min(BASE_BACKOFF_S * (2 ** (attempt - 1)), MAX_BACKOFF_S)
            logger.warning(
                "Could not open inverter at %s (attempt %d/%d): %s - retrying in %.1fs",
                settings.path,
                attempt,
                attempts,
                exc,
                delay,
            )
            await sleep(delay)
        else:
            logger.info("Opened inverter at %s (%s)", settings.path, settings.transport.value)
            return Inverter(transport, timeout_s=settings.timeout_s)
    # Unreachable: open_retry_attempts is validated to be >= 1.
    raise TransportError(f"Could not open inverter at {settings.path}")
