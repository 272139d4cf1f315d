"""
StreamBus -- Log store interface and the Redis Streams adapter.

The bus engine never calls redis-py directly; it talks to a
:class:`StreamStore`.  :class:`RedisStreamStore` is the production
implementation on top of ``redis.asyncio``.

Commands newer than redis-py's typed helpers (trimming reference policies
on ``XADD``, ``XACKDEL``, ``IDMP`` / ``IDMPAUTO``, ``XCFGSET``) are issued
through ``execute_command``.

Usage:
    store = RedisStreamStore("redis://localhost:6379")
    await store.connect()
    ...
    await store.disconnect()
"""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError, TimeoutError

from streambus.bus.types import AppendRequest, DeleteMode, PendingEntry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Store protocol
# ---------------------------------------------------------------------------

class StreamStore(Protocol):
    """Capabilities the bus engine needs from the backing log store.

    Read methods return raw replies; normalization is the engine's job
    (see :mod:`streambus.bus.response_parser`).
    """

    async def append(self, key: str, request: AppendRequest) -> str:
        ...

    async def append_many(self, key: str, requests: list[AppendRequest]) -> list[str]:
        ...

    async def create_group(self, key: str, group: str, start_id: str, mkstream: bool = True) -> bool:
        """Create *group*; return False if it already exists."""
        ...

    async def list_groups(self, key: str) -> list[dict[str, Any]]:
        ...

    async def list_consumers(self, key: str, group: str) -> list[dict[str, Any]]:
        ...

    async def stream_info(self, key: str) -> dict[str, Any]:
        ...

    async def read_group(
        self,
        group: str,
        consumer: str,
        streams: dict[str, str],
        count: int,
        block_ms: Optional[int] = None,
        noack: bool = False,
    ) -> Any:
        ...

    async def ack(self, key: str, group: str, *ids: str) -> int:
        ...

    async def ack_and_delete(
        self, key: str, group: str, policy: DeleteMode, ids: list[str]
    ) -> list[int]:
        ...

    async def delete(self, key: str, *ids: str) -> int:
        ...

    async def pending_range(
        self,
        key: str,
        group: str,
        min_id: str,
        max_id: str,
        count: int,
        consumer: Optional[str] = None,
    ) -> list[PendingEntry]:
        ...

    async def claim(
        self,
        key: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        ids: list[str],
        idle_ms: Optional[int] = None,
        justid: bool = False,
    ) -> list[Any]:
        ...

    async def auto_claim(
        self,
        key: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        start_id: str,
        count: int,
    ) -> tuple[str, Any, list[str]]:
        """Return ``(next_cursor, claimed_entries, deleted_ids)``."""
        ...

    async def range(self, key: str, min_id: str, max_id: str, count: Optional[int] = None) -> Any:
        ...

    async def reverse_range(self, key: str, count: int) -> Any:
        ...

    async def server_time(self) -> int:
        ...

    async def server_version(self) -> str:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def length(self, key: str) -> int:
        ...

    async def scan_keys(self, pattern: str) -> list[str]:
        ...

    async def delete_key(self, key: str) -> int:
        ...

    async def set_idempotency_window(
        self, key: str, duration_sec: Optional[int], max_size: Optional[int]
    ) -> None:
        ...


# ---------------------------------------------------------------------------
# Redis implementation
# ---------------------------------------------------------------------------

def build_xadd_args(key: str, request: AppendRequest) -> list[Any]:
    """Assemble a raw ``XADD`` command for *request*."""
    args: list[Any] = ["XADD", key]
    if request.delete_policy is not None:
        args.append(request.delete_policy.value)
    if request.idempotency is not None:
        args.extend(request.idempotency.as_args())
    if request.trim is not None:
        args.extend(request.trim.as_args())
    args.append(request.entry_id)
    for field, value in request.fields.items():
        args.extend((field, value))
    return args


class RedisStreamStore:
    """:class:`StreamStore` backed by ``redis.asyncio``.

    Args:
        redis_url: Redis connection URL, e.g. ``"redis://localhost:6379"``.
        client: Pre-built client; when given, :meth:`connect` only pings it.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        client: Optional[redis.Redis] = None,
    ) -> None:
        self._redis_url: str = redis_url
        self._redis: Optional[redis.Redis] = client

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> None:
        """Create the connection pool (``decode_responses=True``) and ping.

        Raises:
            RedisConnectionError: If the initial connection attempt fails.
        """
        try:
            if self._redis is None:
                self._redis = redis.from_url(
                    self._redis_url,
                    decode_responses=True,
                    socket_connect_timeout=5.0,
                    socket_keepalive=True,
                    health_check_interval=30,
                )
            await self._redis.ping()
            logger.info("RedisStreamStore connected to %s", self._redis_url)
        except (RedisConnectionError, TimeoutError, OSError) as exc:
            logger.error(
                "RedisStreamStore failed to connect to %s: %s",
                self._redis_url,
                exc,
            )
            self._redis = None
            raise

    async def disconnect(self) -> None:
        """Close the connection pool gracefully."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
                logger.info("RedisStreamStore disconnected from %s", self._redis_url)
            except Exception as exc:
                logger.warning("Error during RedisStreamStore disconnect: %s", exc)
            finally:
                self._redis = None

    @property
    def redis(self) -> redis.Redis:
        """Return the underlying client.

        Raises:
            RuntimeError: If :meth:`connect` has not been called.
        """
        if self._redis is None:
            raise RuntimeError(
                "RedisStreamStore is not connected. Call connect() first."
            )
        return self._redis

    async def health_check(self) -> bool:
        """Return True if the Redis connection is healthy."""
        try:
            await self.redis.ping()
            return True
        except Exception as exc:
            logger.warning("RedisStreamStore health check failed: %s", exc)
            return False

    # -- append --------------------------------------------------------------

    async def append(self, key: str, request: AppendRequest) -> str:
        try:
            entry_id = await self.redis.execute_command(*build_xadd_args(key, request))
        except (RedisConnectionError, TimeoutError) as exc:
            logger.error("XADD to %s failed: %s", key, exc)
            raise
        except ResponseError as exc:
            logger.error("Redis protocol error on XADD to %s: %s", key, exc)
            raise
        return _as_str(entry_id)

    async def append_many(self, key: str, requests: list[AppendRequest]) -> list[str]:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for request in requests:
                    pipe.execute_command(*build_xadd_args(key, request))
                ids: list[Any] = await pipe.execute()
        except (RedisConnectionError, TimeoutError) as exc:
            logger.error("Pipelined XADD of %d entries to %s failed: %s", len(requests), key, exc)
            raise
        return [_as_str(entry_id) for entry_id in ids]

    # -- groups --------------------------------------------------------------

    async def create_group(self, key: str, group: str, start_id: str, mkstream: bool = True) -> bool:
        try:
            await self.redis.xgroup_create(
                name=key,
                groupname=group,
                id=start_id,
                mkstream=mkstream,
            )
        except ResponseError as exc:
            # "BUSYGROUP Consumer Group name already exists"
            if "BUSYGROUP" in str(exc):
                logger.debug("Consumer group '%s' already exists on '%s'", group, key)
                return False
            logger.error(
                "Failed to create consumer group '%s' on '%s': %s", group, key, exc
            )
            raise
        logger.info(
            "Created consumer group '%s' on stream '%s' (start=%s)", group, key, start_id
        )
        return True

    async def list_groups(self, key: str) -> list[dict[str, Any]]:
        return list(await self.redis.xinfo_groups(name=key))

    async def list_consumers(self, key: str, group: str) -> list[dict[str, Any]]:
        return list(await self.redis.xinfo_consumers(name=key, groupname=group))

    async def stream_info(self, key: str) -> dict[str, Any]:
        return dict(await self.redis.xinfo_stream(name=key))

    # -- read ----------------------------------------------------------------

    async def read_group(
        self,
        group: str,
        consumer: str,
        streams: dict[str, str],
        count: int,
        block_ms: Optional[int] = None,
        noack: bool = False,
    ) -> Any:
        try:
            return await self.redis.xreadgroup(
                groupname=group,
                consumername=consumer,
                streams=streams,
                count=count,
                block=block_ms,
                noack=noack,
            )
        except (RedisConnectionError, TimeoutError) as exc:
            logger.error(
                "XREADGROUP (group=%s, consumer=%s) failed: %s", group, consumer, exc
            )
            raise

    async def range(self, key: str, min_id: str, max_id: str, count: Optional[int] = None) -> Any:
        return await self.redis.xrange(name=key, min=min_id, max=max_id, count=count)

    async def reverse_range(self, key: str, count: int) -> Any:
        return await self.redis.xrevrange(name=key, count=count)

    # -- ack / delete --------------------------------------------------------

    async def ack(self, key: str, group: str, *ids: str) -> int:
        if not ids:
            return 0
        try:
            return int(await self.redis.xack(key, group, *ids))
        except (RedisConnectionError, TimeoutError) as exc:
            logger.error("XACK on %s (group=%s) failed: %s", key, group, exc)
            raise

    async def ack_and_delete(
        self, key: str, group: str, policy: DeleteMode, ids: list[str]
    ) -> list[int]:
        if not ids:
            return []
        try:
            codes = await self.redis.execute_command(
                "XACKDEL", key, group, policy.value, "IDS", len(ids), *ids
            )
        except (RedisConnectionError, TimeoutError) as exc:
            logger.error("XACKDEL on %s (group=%s) failed: %s", key, group, exc)
            raise
        return [int(code) for code in codes]

    async def delete(self, key: str, *ids: str) -> int:
        if not ids:
            return 0
        return int(await self.redis.xdel(key, *ids))

    async def delete_key(self, key: str) -> int:
        return int(await self.redis.delete(key))

    # -- pending / claim -----------------------------------------------------

    async def pending_range(
        self,
        key: str,
        group: str,
        min_id: str,
        max_id: str,
        count: int,
        consumer: Optional[str] = None,
    ) -> list[PendingEntry]:
        try:
            rows = await self.redis.xpending_range(
                name=key,
                groupname=group,
                min=min_id,
                max=max_id,
                count=count,
                consumername=consumer,
            )
        except ResponseError as exc:
            if "NOGROUP" in str(exc):
                logger.warning(
                    "Consumer group '%s' does not exist on '%s' for XPENDING.",
                    group,
                    key,
                )
                return []
            raise
        return [
            PendingEntry(
                id=_as_str(row.get("message_id", "")),
                consumer=_as_str(row.get("consumer", "")),
                idle_ms=int(row.get("time_since_delivered", 0)),
                delivery_count=int(row.get("times_delivered", 0)),
            )
            for row in rows
        ]

    async def claim(
        self,
        key: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        ids: list[str],
        idle_ms: Optional[int] = None,
        justid: bool = False,
    ) -> list[Any]:
        try:
            claimed = await self.redis.xclaim(
                name=key,
                groupname=group,
                consumername=consumer,
                min_idle_time=min_idle_ms,
                message_ids=ids,
                idle=idle_ms,
                justid=justid,
            )
        except (RedisConnectionError, TimeoutError) as exc:
            logger.error("XCLAIM on %s (group=%s) failed: %s", key, group, exc)
            raise
        if justid:
            return [_as_str(entry_id) for entry_id in claimed]
        return list(claimed)

    async def auto_claim(
        self,
        key: str,
        group: str,
        consumer: str,
        min_idle_ms: int,
        start_id: str,
        count: int,
    ) -> tuple[str, Any, list[str]]:
        try:
            reply = await self.redis.xautoclaim(
                name=key,
                groupname=group,
                consumername=consumer,
                min_idle_time=min_idle_ms,
                start_id=start_id,
                count=count,
                justid=False,
            )
        except (RedisConnectionError, TimeoutError) as exc:
            logger.error("XAUTOCLAIM on %s (group=%s) failed: %s", key, group, exc)
            raise
        cursor: str = _as_str(reply[0])
        claimed: Any = reply[1] if len(reply) > 1 else []
        deleted: list[str] = [_as_str(i) for i in reply[2]] if len(reply) > 2 else []
        return cursor, claimed, deleted

    # -- server / keys -------------------------------------------------------

    async def server_time(self) -> int:
        seconds, _micros = await self.redis.time()
        return int(seconds)

    async def server_version(self) -> str:
        info: dict[str, Any] = await self.redis.info("server")
        return str(info.get("redis_version", "0.0.0"))

    async def exists(self, key: str) -> bool:
        return int(await self.redis.exists(key)) > 0

    async def length(self, key: str) -> int:
        return int(await self.redis.xlen(name=key))

    async def scan_keys(self, pattern: str) -> list[str]:
        return [_as_str(key) async for key in self.redis.scan_iter(match=pattern, count=100)]

    async def set_idempotency_window(
        self, key: str, duration_sec: Optional[int], max_size: Optional[int]
    ) -> None:
        args: list[Any] = ["XCFGSET", key]
        if duration_sec is not None:
            args.extend(("IDMP-DURATION", duration_sec))
        if max_size is not None:
            args.extend(("IDMP-MAXSIZE", max_size))
        await self.redis.execute_command(*args)
        logger.debug(
            "Idempotency window on %s: duration=%s max_size=%s", key, duration_sec, max_size
        )


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)
