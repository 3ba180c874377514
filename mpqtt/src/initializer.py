"""
One-shot initialization sequence run before polling starts.

Queries the device identity, protocol id and firmware version, in that
order, publishing each result under the command's short name. A device that
refuses the identity query is tolerated; protocol id or firmware version
failures abort the sequence with :class:`InitializationError`.

:func:`initialize_with_retry` keeps the agent out of the main loop until
initialization succeeds: each failure is published on the error channel and
the sequence is retried after an exponentially growing delay.

CHANGELOG:
- 2026-10-17: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from mpqtt.src.commands import Command
from mpqtt.src.protocol import InverterError

if TYPE_CHECKING:
    from mpqtt.src.scheduler import CommandExecutor
    from mpqtt.src.sink import TelemetrySink

logger = logging.getLogger(__name__)

MAX_INIT_BACKOFF_S: float = 300.0
"""Cap for the delay between initialization attempts."""


class InitializationError(Exception):
    """A mandatory initialization query failed."""


async def run_init(inverter: CommandExecutor, sink: TelemetrySink) -> None:
    """Run the initialization queries once.

    Raises:
        InitializationError: If QPI or QVFW fails.
    """
    try:
        serial_number = await inverter.execute(Command.QID)
    except InverterError as exc:
        logger.error("Error fetching serial number: %s", exc)
    else:
        await sink.publish_record(Command.QID.suffix, serial_number)

    for command in (Command.QPI, Command.QVFW):
        try:
            record = await inverter.execute(command)
        except InverterError as exc:
            raise InitializationError(f"{command.name} failed: {exc}") from exc
        await sink.publish_record(command.suffix, record)

    logger.debug("Completed init commands")


async def initialize_with_retry(
    inverter: CommandExecutor,
    sink: TelemetrySink,
    *,
    base_delay_s: float,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Run :func:`run_init` until it succeeds.

    Each failure is published on the error channel, then the sequence is
    retried after *base_delay_s*, doubling per consecutive failure up to
    MAX_INIT_BACKOFF_S.

    Returns:
        The number of attempts it took.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            await run_init(inverter, sink)
        except InitializationError as exc:
            delay = min(max(base_delay_s, 1.0) * (2 ** (attempt - 1)), MAX_INIT_BACKOFF_S)
            await sink.publish_error(str(exc))
            logger.error(
                "Error initialising inverter (attempt %d): %s - retrying in %.1fs",
                attempt,
                exc,
                delay,
            )
            await sleep(delay)
        else:
            return attempt
