"""
StreamBus -- Consumer façade over the three read phases.

:class:`StreamBusConsumer` binds one engine to a ``(group, consumer)`` pair
and hides the read pipeline:

    1. **Pending replay**: entries already delivered to this consumer but
       never acked (e.g. before a crash).  Replayed until exhausted, then
       skipped for the rest of the consumer's lifetime.
    2. **Expired reclaim**: entries idle longer than ``ack_wait_ms`` in any
       consumer's ledger, including nacked ones whose delay elapsed.
    3. **New entries**: never-delivered entries, optionally blocking.

No ordering guarantees across phases; delivery is at-least-once, so
handlers must be idempotent.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from streambus.bus.exceptions import GroupCreationError
from streambus.bus.stream_bus import Cursor, ReadResult, StreamBus

logger = logging.getLogger(__name__)


class StreamBusConsumerProtocol(Protocol):
    """What the processing loop needs from a consumer."""

    async def read(self, count: int = 1, block_ms: Optional[int] = None) -> ReadResult:
        ...

    async def ack(self, subject: str, *ids: str) -> int:
        ...

    async def nack(self, subject: str, entry_id: str, nack_delay_ms: Optional[int] = None) -> int:
        ...


class StreamBusConsumer:
    """At-least-once consumer for one group member.

    The consumer group is created lazily on the first call.

    Args:
        bus: Engine to read from.
        group: Consumer group name.
        consumer: This member's name inside the group.
    """

    def __init__(self, bus: StreamBus, group: str, consumer: str) -> None:
        self._bus: StreamBus = bus
        self._group: str = group
        self._consumer: str = consumer

        self._read_pending: bool = True
        self._pending_cursor: Optional[Cursor] = None
        self._initialized: bool = False

    @property
    def bus(self) -> StreamBus:
        return self._bus

    @property
    def group(self) -> str:
        return self._group

    @property
    def consumer(self) -> str:
        return self._consumer

    async def read(self, count: int = 1, block_ms: Optional[int] = None) -> ReadResult:
        await self._init()

        if self._read_pending:
            items, self._pending_cursor = await self._bus.read_pending(
                self._group, self._consumer, count, self._pending_cursor
            )
            if items:
                return items
            self._read_pending = False
            self._pending_cursor = None
            logger.debug(
                "Pending replay finished for %s/%s (group=%s)",
                self._bus.name,
                self._consumer,
                self._group,
            )

        items = await self._bus.read_expired(self._group, self._consumer, count)
        if items:
            return items
        return await self._bus.read_new(self._group, self._consumer, count, block_ms)

    async def ack(self, subject: str, *ids: str) -> int:
        await self._init()
        return await self._bus.ack(self._group, subject, *ids)

    async def nack(self, subject: str, entry_id: str, nack_delay_ms: Optional[int] = None) -> int:
        await self._init()
        return await self._bus.nack(
            self._group, self._consumer, subject, entry_id, nack_delay_ms
        )

    async def _init(self) -> None:
        if self._initialized:
            return
        if not await self._bus.create_group(self._group):
            raise GroupCreationError(f"can't create group {self._group!r}")
        self._initialized = True
        logger.info(
            "Consumer '%s' joined group '%s' on bus '%s'",
            self._consumer,
            self._group,
            self._bus.name,
        )
