"""
MQTT telemetry sink with bounded, best-effort publishing.

Publishes payloads to ``{topic}/{suffix}`` at QoS 1 without retain. Each
publish is attempted up to PUBLISH_ATTEMPTS times back to back; every failed
attempt is logged, and running out of attempts is logged and swallowed.
Losing one telemetry point must never stop polling, so publish failures are
never raised to the caller.

The broker connection is owned by :class:`MqttConnection`, which drops a
client once it fails and connects a fresh one on the next publish. Failed
reconnects are retried no sooner than RECONNECT_DELAY_S later; in between,
publishes fail immediately instead of waiting on the broker.

The ``error`` channel carries the most recent error text; an empty payload
on it means the agent is healthy.

CHANGELOG:
- 2026-10-17: Initial creation
- 2026-10-17: Reconnect to the broker after the connection drops

TODO:
- None
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from contextlib import AsyncExitStack

from aiomqtt import Client, MqttError
from pydantic import BaseModel

logger = logging.getLogger(__name__)

PUBLISH_ATTEMPTS: int = 5
"""Publish attempts per message before it is dropped."""

RECONNECT_DELAY_S: float = 5.0
"""Minimum seconds between two failed reconnect attempts."""

ERROR_SUFFIX = "error"


class MqttConnection:
    """A broker connection that is re-established after it drops.

    Args:
        client_factory: Builds a new, unconnected :class:`aiomqtt.Client`.
            Called once per connection attempt.
        clock: Monotonic clock in seconds, injectable for tests.
    """

    def __init__(
        self,
        client_factory: Callable[[], Client],
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_factory = client_factory
        self._clock = clock
        self._stack: AsyncExitStack | None = None
        self._client: Client | None = None
        self._retry_at = 0.0

    @property
    def connected(self) -> bool:
        """True while a client is connected."""
        return self._client is not None

    async def connect(self) -> Client:
        """Connect a fresh client and return it.

        Raises:
            MqttError: If the broker cannot be reached.
        """
        stack = AsyncExitStack()
        try:
            client = await stack.enter_async_context(self._client_factory())
        except MqttError:
            self._retry_at = self._clock() + RECONNECT_DELAY_S
            raise
        self._stack = stack
        self._client = client
        return client

    async def close(self) -> None:
        """Disconnect the current client, if any."""
        stack, self._stack, self._client = self._stack, None, None
        if stack is None:
            return
        try:
            await stack.aclose()
        except MqttError as exc:
            logger.debug("Error closing MQTT connection: %s", exc)

    async def publish(
        self,
        topic: str,
        payload: str | bytes | None = None,
        qos: int = 0,
        retain: bool = False,
    ) -> None:
        """Publish on the current client, reconnecting first if it dropped.

        Raises:
            MqttError: If the publish fails or no connection can be made.
        """
        client = self._client
        if client is None:
            if self._clock() < self._retry_at:
                raise MqttError("Not connected to MQTT broker")
            client = await self.connect()
            logger.info("Reconnected to MQTT broker")
        try:
            await client.publish(topic, payload=payload, qos=qos, retain=retain)
        except MqttError:
            await self.close()
            raise


class TelemetrySink:
    """Publishes telemetry under a topic prefix.

    Args:
        connection: Broker connection; the sink does not own it.
        topic: Topic prefix, without trailing slash.
    """

    def __init__(self, connection: MqttConnection, topic: str) -> None:
        self._connection = connection
        self._topic = topic

    def topic_for(self, suffix: str) -> str:
        """Return the full topic for a channel suffix."""
        return f"{self._topic}/{suffix}"

    async def publish(self, suffix: str, payload: str | bytes) -> bool:
        """Publish *payload* under ``{topic}/{suffix}`` with bounded retry.

        Returns:
            ``True`` if the broker accepted the message, ``False`` if every
            attempt failed.
        """
        return await self.publish_raw(self.topic_for(suffix), payload)

    async def publish_raw(
        self,
        topic: str,
        payload: str | bytes,
        *,
        retain: bool = False,
    ) -> bool:
        """Publish *payload* to an absolute *topic* with bounded retry."""
        for attempt in range(1, PUBLISH_ATTEMPTS + 1):
            try:
                await self._connection.publish(topic, payload=payload, qos=1, retain=retain)
            except MqttError as exc:
                logger.error(
                    "Error publishing to %s (attempt %d/%d): %s",
                    topic,
                    attempt,
                    PUBLISH_ATTEMPTS,
                    exc,
                )
            else:
                return True
        logger.error("Dropping message for %s after %d attempts", topic, PUBLISH_ATTEMPTS)
        return False

    async def publish_record(self, suffix: str, record: BaseModel) -> bool:
        """Serialize a pydantic record to JSON and publish it.

        Serialization errors propagate: they indicate a bad record, not a
        delivery problem.
        """
        return await self.publish(suffix, record.model_dump_json())

    async def publish_error(self, message: str) -> bool:
        """Publish *message* as the current error."""
        return await self.publish(ERROR_SUFFIX, message)

    async def clear_error(self) -> bool:
        """Publish an empty payload to mark the agent healthy."""
        return await self.publish(ERROR_SUFFIX, b"")
