"""
Redis push-channel bridge for the ChangeNotifier.

Outbound: every locally originated event is PUBLISHed as JSON to
"{channel_prefix}:{table}".
Inbound: a PSUBSCRIBE on "{channel_prefix}:*" feeds messages from other
processes into the local notifier. Messages carrying this process's
origin are echoes and are skipped.

The bridge is optional. When Redis is unreachable, start() returns Err
and the engine keeps running with in-process delivery only.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from coedit.core import constants as C
from coedit.core.errors import NotificationError
from coedit.core.types import Err, Ok, Result
from coedit.notify.events import ChangeEvent
from coedit.notify.notifier import ChangeNotifier
from coedit.storage.config import RedisConfig

logger = logging.getLogger(__name__)


class RedisEventBridge:
    """
    Example:
        >>> bridge = RedisEventBridge(notifier, RedisConfig(host="redis"))
        >>> result = await bridge.start()
        >>> if result.is_err():
        ...     log.warning("running without push channel")
        >>> await bridge.stop()
    """

    __slots__ = (
        "_notifier",
        "_config",
        "_client",
        "_owns_client",
        "_prefix",
        "_pubsub",
        "_task",
        "_received",
        "_published",
    )

    def __init__(
        self,
        notifier: ChangeNotifier,
        config: Optional[RedisConfig] = None,
        client: Optional[Any] = None,
        channel_prefix: str = C.REDIS_CHANNEL_PREFIX,
    ) -> None:
        self._notifier = notifier
        self._config = config or RedisConfig()
        self._client: Optional[Any] = client
        self._owns_client = client is None
        self._prefix = channel_prefix
        self._pubsub: Optional[Any] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._received = 0
        self._published = 0

    def channel_for(self, table: str) -> str:
        return f"{self._prefix}:{table}"

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stats(self) -> dict[str, int]:
        return {"received": self._received, "published": self._published}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> Result[None, NotificationError]:
        """Subscribe to the channel pattern and start forwarding."""
        pattern = f"{self._prefix}:*"
        try:
            if self._client is None:
                self._client = aioredis.Redis(**self._config.get_connection_kwargs())
            await self._client.ping()
            self._pubsub = self._client.pubsub()
            await self._pubsub.psubscribe(pattern)
        except (RedisError, OSError) as e:
            return Err(NotificationError.channel_unavailable(pattern, cause=e))

        self._notifier.add_forwarder(self.forward)
        self._task = asyncio.create_task(self._listen(), name="coedit-redis-bridge")
        logger.info("Push channel bridge started", extra={"pattern": pattern})
        return Ok(None)

    async def stop(self) -> None:
        """Stop listening and forwarding. Safe to call multiple times."""
        self._notifier.remove_forwarder(self.forward)

        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self._pubsub is not None:
            try:
                await self._pubsub.punsubscribe()
                await self._pubsub.aclose()
            except (RedisError, OSError) as e:
                logger.warning("Push channel close failed", extra={"error": repr(e)})
            self._pubsub = None

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------

    async def forward(self, event: ChangeEvent) -> None:
        """Notifier forwarder: publish one local event. Failures are logged."""
        if self._client is None:
            return
        channel = self.channel_for(event.table)
        try:
            await self._client.publish(channel, event.to_json())
        except (RedisError, OSError) as e:
            error = NotificationError.channel_unavailable(channel, cause=e)
            logger.warning(str(error), extra={"event": event.event.value})
            return
        self._published += 1

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------

    async def handle_message(self, data: Any) -> bool:
        """
        Deliver one inbound message locally.

        Returns:
            True when delivered, False for echoes and malformed messages
        """
        try:
            event = ChangeEvent.from_message(data)
        except NotificationError as e:
            logger.warning(str(e), extra=e.context)
            return False

        if event.origin == self._notifier.origin:
            return False

        self._received += 1
        await self._notifier.deliver(event)
        return True

    async def _listen(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") not in ("message", "pmessage"):
                    continue
                await self.handle_message(message.get("data"))
        except (RedisError, OSError) as e:
            logger.error(
                "Push channel lost; continuing with in-process delivery",
                extra={"error": repr(e)},
            )
