"""
StreamBus -- Dead-letter queue operations.

A dead-letter queue is just a second :class:`StreamBus` (by convention
named ``dlq:<source name>``) that the source bus forwards exhausted
entries to from :meth:`StreamBus.nack`.  This module adds the operator
side on top of it:

    - inspect the newest dead-lettered entries of a subject
    - replay one entry back into the source bus
    - purge a subject's dead-letter stream
    - per-subject sizes

The DLQ bus can also be consumed like any other bus (e.g. by a redrive
processor); the methods here work directly on the stream without a
consumer group.
"""

from __future__ import annotations

import logging
from typing import Any

from streambus.bus.response_parser import parse_entries
from streambus.bus.stream_bus import StreamBus

logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """Operator view of a DLQ bus.

    Args:
        dlq_bus: The bus exhausted entries are forwarded to.
        source_bus: The bus replayed entries go back to.
    """

    def __init__(self, dlq_bus: StreamBus, source_bus: StreamBus) -> None:
        self._dlq: StreamBus = dlq_bus
        self._source: StreamBus = source_bus

    @property
    def bus(self) -> StreamBus:
        return self._dlq

    async def inspect(self, subject: str, count: int = 10) -> list[dict[str, Any]]:
        """View the most recent DLQ entries of *subject*.

        Returns:
            Newest first; each item has ``dlq_id``, ``subject`` and
            ``payload`` (``None`` for a tombstone).
        """
        key: str = self._dlq.stream_key(subject)
        # XREVRANGE gives newest-first
        entries = parse_entries(await self._dlq.store.reverse_range(key, count))

        result: list[dict[str, Any]] = [
            {
                "dlq_id": dlq_id,
                "subject": subject,
                "payload": self._dlq.deserialize(subject, fields),
            }
            for dlq_id, fields in entries.items()
        ]
        logger.debug("DLQ inspect: %s returned %d entries", key, len(result))
        return result

    async def replay(self, subject: str, dlq_id: str) -> bool:
        """Re-add one DLQ entry to the source bus, then drop it from the DLQ.

        Returns:
            True if the entry was replayed, False if it was not found (or is
            a tombstone).
        """
        key: str = self._dlq.stream_key(subject)
        entries = parse_entries(await self._dlq.store.range(key, dlq_id, dlq_id, 1))
        fields = entries.get(dlq_id)
        if fields is None:
            logger.warning("DLQ replay: %s not found in %s", dlq_id, key)
            return False

        payload: Any = self._dlq.deserialize(subject, fields)
        new_id: str = await self._source.add(subject, payload)
        await self._dlq.store.delete(key, dlq_id)

        logger.info(
            "DLQ replay: %s -> %s/%s new_id=%s",
            dlq_id,
            self._source.name,
            subject,
            new_id,
        )
        return True

    async def purge(self, subject: str) -> int:
        """Delete the DLQ stream of *subject*.

        Returns:
            Number of entries that were in the DLQ before the purge.
        """
        key: str = self._dlq.stream_key(subject)
        if not await self._dlq.store.exists(key):
            logger.debug("DLQ purge: %s is already empty", key)
            return 0

        length: int = await self._dlq.store.length(key)
        await self._dlq.store.delete_key(key)
        logger.info("DLQ purged: %s (%d entries removed)", key, length)
        return length

    async def stats(self) -> dict[str, int]:
        """Subject -> DLQ length, for subjects with at least one entry."""
        result: dict[str, int] = {}
        for subject in self._dlq.subjects:
            key: str = self._dlq.stream_key(subject)
            if not await self._dlq.store.exists(key):
                continue
            length: int = await self._dlq.store.length(key)
            if length > 0:
                result[subject] = length
        logger.debug("DLQ stats: %s", result)
        return result
