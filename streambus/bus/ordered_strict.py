"""
StreamBus -- Ordered-strict consumer.

Ordered, at-least-once consumption for a group that must only ever have a
single member.  Raises instead of silently degrading when that contract is
broken.

How it works:
    - Reads replay this consumer's pending entries first, then only new
      entries.  Expired reclaim is never used; it would reorder.
    - ``nack`` is refused.  A failed entry is retried in place by the
      pending replay after a restart.
    - A local ``pending[subject]`` counter is bumped for every new entry
      read and lowered by every ack.  After each ack it is compared with
      the group's pending count from Redis.  A mismatch means someone
      else is reading from the group.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from streambus.bus.exceptions import (
    ForeignConsumerDetectedError,
    GroupCreationError,
    InconsistencyDetectedError,
    MultipleConsumersDetectedError,
    NotAllowedError,
)
from streambus.bus.info import StreamBusInfo
from streambus.bus.stream_bus import Cursor, ReadResult, StreamBus

logger = logging.getLogger(__name__)


class StreamBusOrderedStrictConsumer:
    """Single-member consumer with pending-count cross checks.

    Args:
        bus: Engine to read from.
        info: Introspection for the same bus.
        group: Consumer group name.
        consumer: The one allowed member name.
        subjects: Subjects whose pending counts are tracked.

    Raises (from any call):
        GroupCreationError: The group could not be created.
        MultipleConsumersDetectedError: More than one member in the group.
        ForeignConsumerDetectedError: The sole member has another name.
        InconsistencyDetectedError: Local and Redis pending counts differ.
    """

    def __init__(
        self,
        bus: StreamBus,
        info: StreamBusInfo,
        group: str,
        consumer: str,
        subjects: Iterable[str],
    ) -> None:
        self._bus: StreamBus = bus
        self._info: StreamBusInfo = info
        self._group: str = group
        self._consumer: str = consumer
        self._subjects: list[str] = list(subjects)

        self._read_pending: bool = True
        self._pending_cursor: Optional[Cursor] = None
        self._initialized: bool = False
        self._pending: dict[str, int] = {}

    @property
    def bus(self) -> StreamBus:
        return self._bus

    @property
    def group(self) -> str:
        return self._group

    @property
    def consumer(self) -> str:
        return self._consumer

    @property
    def pending(self) -> dict[str, int]:
        """Locally tracked pending counts (copy)."""
        return dict(self._pending)

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

        items = await self._bus.read_new(self._group, self._consumer, count, block_ms)
        for subject, subject_items in items.items():
            self._pending[subject] = self._pending.get(subject, 0) + len(subject_items)
        return items

    async def ack(self, subject: str, *ids: str) -> int:
        await self._init()

        acked: int = await self._bus.ack(self._group, subject, *ids)
        self._pending[subject] = self._pending.get(subject, 0) - acked
        if acked != len(ids):
            raise InconsistencyDetectedError(subject, len(ids), acked)

        await self._check_pending(subject)
        return acked

    async def nack(self, subject: str, entry_id: str, nack_delay_ms: Optional[int] = None) -> int:
        raise NotAllowedError("nack is not allowed on an ordered-strict consumer")

    # -- consistency ---------------------------------------------------------

    async def _init(self) -> None:
        if self._initialized:
            return
        if not await self._bus.create_group(self._group):
            raise GroupCreationError(f"can't create group {self._group!r}")

        for subject in self._subjects:
            self._pending[subject] = 0
            consumers = await self._info.consumers(subject, self._group)
            if not consumers:
                continue
            record = self._sole_consumer(subject, consumers)
            if record.get("name") != self._consumer:
                raise ForeignConsumerDetectedError(subject, str(record.get("name")))
            self._pending[subject] = int(record.get("pending") or 0)

        self._initialized = True
        logger.info(
            "Ordered-strict consumer '%s' attached to group '%s' (pending=%s)",
            self._consumer,
            self._group,
            self._pending,
        )

    async def _check_pending(self, subject: str) -> None:
        consumers = await self._info.consumers(subject, self._group)
        record = self._sole_consumer(subject, consumers)
        actual: int = int(record.get("pending") or 0)
        calculated: int = self._pending.get(subject, 0)
        if calculated != actual:
            logger.critical(
                "Ordered-strict inconsistency on %s (group=%s): calculated=%d actual=%d",
                subject,
                self._group,
                calculated,
                actual,
            )
            raise InconsistencyDetectedError(subject, calculated, actual)

    def _sole_consumer(self, subject: str, consumers: list[dict[str, Any]]) -> dict[str, Any]:
        if len(consumers) != 1:
            logger.critical(
                "Ordered-strict group '%s' on %s has %d consumers",
                self._group,
                subject,
                len(consumers),
            )
            raise MultipleConsumersDetectedError(subject, len(consumers))
        return consumers[0]
