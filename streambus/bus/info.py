"""
StreamBus -- Group and stream introspection.

Read-only views over the keys of one bus (``streambus:<name>:*``).  Every
method treats a missing stream as empty: ``[]``, ``{}`` or ``0``.

Used by the ordered-strict consumer for its consistency checks and by the
operator CLI for lag reporting.
"""

from __future__ import annotations

import logging
from typing import Any

from streambus.bus.stream_bus import KEY_PREFIX
from streambus.bus.store import StreamStore
from streambus.bus.types import entry_id_key

logger = logging.getLogger(__name__)


class StreamBusInfo:
    """Introspection for bus *name*.

    Args:
        store: Connected :class:`StreamStore`.
        name: Bus name (same value the engine was built with).
    """

    def __init__(self, store: StreamStore, name: str) -> None:
        self._store: StreamStore = store
        self._name: str = name
        self._prefix: str = f"{KEY_PREFIX}{name}:"

    @property
    def name(self) -> str:
        return self._name

    def stream_key(self, subject: str) -> str:
        return f"{self._prefix}{subject}"

    async def subjects(self) -> list[str]:
        """Subjects that currently have a stream, sorted."""
        keys: list[str] = await self._store.scan_keys(f"{self._prefix}*")
        return sorted(key[len(self._prefix):] for key in keys)

    async def groups(self, subject: str) -> list[str]:
        return [str(group.get("name", "")) for group in await self._group_infos(subject)]

    async def group_pending(self, group: str, subject: str) -> int:
        """Delivered but unacked entries of *group* on *subject*."""
        info = await self._group_info(group, subject)
        return int(info.get("pending", 0)) if info else 0

    async def group_time_lag(self, group: str, subject: str) -> int:
        """Milliseconds between the last generated and last delivered IDs.

        Returns 0 when the group is caught up, or when the stream or group
        does not exist.
        """
        key: str = self.stream_key(subject)
        if not await self._store.exists(key):
            return 0

        stream: dict[str, Any] = await self._store.stream_info(key)
        last_generated: str = str(stream.get("last-generated-id") or "0-0")

        info = await self._group_info(group, subject)
        last_delivered: str = str(info.get("last-delivered-id") or "0-0") if info else "0-0"

        lag: int = entry_id_key(last_generated)[0] - entry_id_key(last_delivered)[0]
        return max(0, lag)

    async def group_lag(self, group: str, subject: str) -> int:
        """Number of entries *group* still has to finish: pending + undelivered.

        Returns:
            Lag count.  ``0`` if the stream or group does not exist.
        """
        info = await self._group_info(group, subject)
        if not info:
            return 0

        key: str = self.stream_key(subject)
        pending_count: int = int(info.get("pending", 0))
        last_delivered_id: str = str(info.get("last-delivered-id") or "0-0")

        if last_delivered_id != "0-0":
            # exclusive start via '('
            undelivered = await self._store.range(key, f"({last_delivered_id}", "+")
            undelivered_count: int = len(undelivered or [])
        else:
            # group hasn't delivered anything yet, everything is lag
            undelivered_count = await self._store.length(key)

        total_lag: int = pending_count + undelivered_count
        logger.debug(
            "Lag for %s (group=%s): pending=%d undelivered=%d total=%d",
            key,
            group,
            pending_count,
            undelivered_count,
            total_lag,
        )
        return total_lag

    async def stream_length(self, subject: str) -> int:
        key: str = self.stream_key(subject)
        if not await self._store.exists(key):
            return 0
        return await self._store.length(key)

    async def consumers(self, subject: str, group: str) -> list[dict[str, Any]]:
        """Consumer records (``name``, ``pending``, ``idle``...) of *group*."""
        key: str = self.stream_key(subject)
        if not await self._store.exists(key):
            return []
        return await self._store.list_consumers(key, group)

    async def stream(self, subject: str) -> dict[str, Any]:
        key: str = self.stream_key(subject)
        if not await self._store.exists(key):
            return {}
        return await self._store.stream_info(key)

    # -- helpers -------------------------------------------------------------

    async def _group_infos(self, subject: str) -> list[dict[str, Any]]:
        key: str = self.stream_key(subject)
        if not await self._store.exists(key):
            return []
        return await self._store.list_groups(key)

    async def _group_info(self, group: str, subject: str) -> dict[str, Any]:
        for info in await self._group_infos(subject):
            if info.get("name") == group:
                return info
        return {}
