"""
StreamBus -- Subject-addressed bus engine on top of Redis Streams.

One :class:`StreamBus` owns a fixed set of subjects, each mapped to the
stream key ``streambus:<name>:<subject>`` and bound to one serializer.

Design principles:
    - At-least-once delivery via consumer groups.
    - Retention via MINID / MAXLEN trims attached to ``XADD``
      (see :mod:`streambus.bus.retention`).
    - Three read phases: pending replay, expired reclaim, new entries.
    - Bounded redelivery: ``nack`` past ``max_delivery`` acks the entry and
      hands it to a dead-letter bus and/or a callback.
    - No internal retries.  Store errors propagate to the caller.

The engine keeps two pieces of unlocked per-instance state (the retention
toggle and the expired-reclaim cursors); drive each instance from one
caller at a time.

Usage:
    store = RedisStreamStore("redis://localhost:6379")
    await store.connect()
    bus = StreamBus("orders", store, StreamBusSettings(), {
        "order.placed": StreamBusJsonSerializer(),
    })
    await bus.create_group("billing")
    entry_id = await bus.add("order.placed", {"order_id": "o-1"})
"""

from __future__ import annotations

import inspect
import logging
import random
import re
from typing import Any, Callable, Iterable, Mapping, Optional

from streambus.bus.exceptions import (
    AckModeDisabledError,
    EmptyGroupNameError,
    NackDelayExceedsWaitError,
    StreamBusConfigError,
    UnknownSubjectError,
    UnsupportedFeatureError,
)
from streambus.bus.idempotency import (
    DELETE_MODES_MIN_VERSION,
    IDEMPOTENCY_MIN_VERSION,
    configure_idempotency,
    idempotency_window,
    version_at_least,
)
from streambus.bus.response_parser import Entries, parse_entries, parse_read_reply
from streambus.bus.retention import RetentionPolicy
from streambus.bus.serializer import StreamBusSerializer
from streambus.bus.store import StreamStore
from streambus.bus.types import (
    AppendRequest,
    DeleteMode,
    IdmpMode,
    StreamBusMessage,
    TrimDirective,
    entry_id_key,
)
from streambus.config.settings import StreamBusSettings
from streambus.observability.metrics import get_metrics

logger = logging.getLogger(__name__)

KEY_PREFIX: str = "streambus:"
NACK_CONSUMER: str = "__NACK__"

_SUBJECT_RE = re.compile(r"[\w.-]+")

ReadResult = dict[str, dict[str, Any]]
Cursor = dict[str, str]
MaxAttemptsProcessor = Callable[[str, Any], Any]


class StreamBus:
    """Redis Streams bus engine.

    Args:
        name: Bus name; forms the key prefix ``streambus:<name>:``.
        store: Connected :class:`StreamStore`.
        settings: Immutable bus policy.
        serializers: Mapping of subject name to its serializer.  Subject
            names must match ``[\\w.-]+``.

    Raises:
        StreamBusConfigError: Empty serializer mapping or invalid subject.
    """

    def __init__(
        self,
        name: str,
        store: StreamStore,
        settings: StreamBusSettings,
        serializers: Mapping[str, StreamBusSerializer],
    ) -> None:
        if not serializers:
            raise StreamBusConfigError("no serializers provided")

        self._name: str = name
        self._store: StreamStore = store
        self._settings: StreamBusSettings = settings
        self._prefix: str = f"{KEY_PREFIX}{name}:"

        self._serializers: dict[str, StreamBusSerializer] = {}
        self._stream_keys: list[str] = []
        for subject, serializer in serializers.items():
            if not _SUBJECT_RE.fullmatch(subject):
                raise StreamBusConfigError(f"invalid subject {subject!r}")
            self._serializers[subject] = serializer
            self._stream_keys.append(self.stream_key(subject))

        self._retention: RetentionPolicy = RetentionPolicy(settings)
        self._expired_cursors: dict[str, str] = {}

        self._dead_letter_queue: Optional[StreamBus] = None
        self._max_attempts_processor: Optional[MaxAttemptsProcessor] = None

        self._server_version: Optional[str] = None
        self._metrics = get_metrics()

    # -- properties / wiring -------------------------------------------------

    @property
    def name(self) -> str:
        return self._name

    @property
    def settings(self) -> StreamBusSettings:
        return self._settings

    @property
    def store(self) -> StreamStore:
        return self._store

    @property
    def subjects(self) -> list[str]:
        return list(self._serializers)

    @property
    def dead_letter_queue(self) -> Optional["StreamBus"]:
        return self._dead_letter_queue

    def set_dead_letter_queue(self, dead_letter_queue: Optional["StreamBus"]) -> "StreamBus":
        self._dead_letter_queue = dead_letter_queue
        return self

    def set_max_attempts_processor(
        self, processor: Optional[MaxAttemptsProcessor]
    ) -> "StreamBus":
        """Register ``processor(entry_id, payload)`` for exhausted entries.

        May be a plain function or a coroutine function.  Its result is
        coerced to ``int`` and returned from :meth:`nack`.
        """
        self._max_attempts_processor = processor
        return self

    def stream_key(self, subject: str) -> str:
        return f"{self._prefix}{subject}"

    def subject_from_key(self, key: str) -> str:
        return key[len(self._prefix):]

    def _check_subject(self, subject: str) -> None:
        if subject not in self._serializers:
            raise UnknownSubjectError(subject)

    # -- codec ---------------------------------------------------------------

    def serialize(self, subject: str, item: Any) -> dict[str, str]:
        return self._serializers[subject].serialize(item)

    def deserialize(self, subject: str, fields: Optional[Mapping[str, Any]]) -> Any:
        if fields is None:
            return None
        return self._serializers[subject].deserialize(fields)

    # -- feature gating ------------------------------------------------------

    async def _version(self) -> str:
        if self._server_version is None:
            self._server_version = await self._store.server_version()
            logger.debug("Bus '%s' talking to Redis %s", self._name, self._server_version)
        return self._server_version

    async def supports_delete_modes(self) -> bool:
        return version_at_least(await self._version(), DELETE_MODES_MIN_VERSION)

    async def supports_idempotency(self) -> bool:
        return version_at_least(await self._version(), IDEMPOTENCY_MIN_VERSION)

    # -- publish -------------------------------------------------------------

    async def add(
        self,
        subject: str,
        item: Any,
        producer_id: str = "",
        idempotent_id: Optional[str] = None,
    ) -> str:
        """Append one payload to *subject*.

        Args:
            subject: Registered subject.
            item: Payload, or a :class:`StreamBusMessage` envelope to set
                the entry ID / idempotency key.
            producer_id: Producer identity (required for idempotent modes).
            idempotent_id: Idempotency key used in EXPLICIT mode when the
                envelope does not carry one.

        Returns:
            The entry ID assigned by Redis.

        Raises:
            UnknownSubjectError: *subject* is not registered.
            UnsupportedFeatureError: Idempotency on Redis < 8.6.
            MissingProducerIdError / MissingIdempotentIdError.
            CodecError: The payload could not be serialized.
        """
        self._check_subject(subject)

        now: int = await self._store.server_time() if self._retention.needs_clock(1) else 0
        trim: Optional[TrimDirective] = self._retention.select(1, now)[0]
        request: AppendRequest = await self._build_request(
            subject, item, trim, producer_id, idempotent_id
        )

        entry_id: str = await self._store.append(self.stream_key(subject), request)
        self._metrics.added.labels(self._name, subject).inc()
        logger.debug(
            "Added to %s/%s: id=%s trim=%s", self._name, subject, entry_id, trim
        )
        return entry_id

    async def add_many(
        self,
        subject: str,
        items: Iterable[Any],
        producer_id: str = "",
    ) -> list[str]:
        """Append a batch in one atomic pipeline.

        Returns the entry IDs in input order.  The batch's last item carries
        the size trim and the one before it the age trim (when both budgets
        are configured).
        """
        self._check_subject(subject)

        batch: list[Any] = list(items)
        if not batch:
            return []

        now: int = (
            await self._store.server_time() if self._retention.needs_clock(len(batch)) else 0
        )
        trims: list[Optional[TrimDirective]] = self._retention.select(len(batch), now)
        requests: list[AppendRequest] = [
            await self._build_request(subject, item, trim, producer_id, None)
            for item, trim in zip(batch, trims)
        ]

        ids: list[str] = await self._store.append_many(self.stream_key(subject), requests)
        self._metrics.added.labels(self._name, subject).inc(len(ids))
        logger.debug("Added %d entries to %s/%s", len(ids), self._name, subject)
        return ids

    async def _build_request(
        self,
        subject: str,
        item: Any,
        trim: Optional[TrimDirective],
        producer_id: str,
        idempotent_id: Optional[str],
    ) -> AppendRequest:
        entry_id: str = "*"
        if isinstance(item, StreamBusMessage):
            entry_id = item.id or "*"
            if item.idempotent_id is not None:
                idempotent_id = item.idempotent_id
            item = item.item

        delete_policy: Optional[DeleteMode] = (
            self._settings.delete_policy if await self.supports_delete_modes() else None
        )

        idempotency = None
        if self._settings.idmp_mode is not IdmpMode.NONE:
            idempotency = configure_idempotency(
                self._settings.idmp_mode,
                producer_id,
                idempotent_id,
                await self.supports_idempotency(),
            )

        return AppendRequest(
            fields=self.serialize(subject, item),
            entry_id=entry_id,
            trim=trim,
            delete_policy=delete_policy,
            idempotency=idempotency,
        )

    # -- consumer groups -----------------------------------------------------

    async def create_group(self, group: str, start_id: str = "0") -> bool:
        """Create *group* on every subject of this bus.

        Idempotent: subjects that already have the group are skipped, and a
        concurrent creator winning the race counts as success.

        Returns:
            True if the group exists on every subject afterwards.

        Raises:
            EmptyGroupNameError: *group* is empty.
        """
        if group == "":
            raise EmptyGroupNameError("group name can't be empty")

        for key in self._stream_keys:
            if await self._store.exists(key) and await self._has_group(key, group):
                continue

            if not await self._store.create_group(key, group, start_id, mkstream=True):
                # lost a race with another creator, or something else is off
                if await self._has_group(key, group):
                    continue
                logger.error("Could not create group '%s' on '%s'", group, key)
                return False

            await self._apply_idempotency_window(key)

        return True

    async def _has_group(self, key: str, group: str) -> bool:
        groups: list[dict[str, Any]] = await self._store.list_groups(key)
        return any(g.get("name") == group for g in groups)

    async def _apply_idempotency_window(self, key: str) -> None:
        if self._settings.idmp_mode is IdmpMode.NONE:
            return
        if not await self.supports_idempotency():
            return
        window = idempotency_window(
            self._settings.idmp_duration_sec, self._settings.idmp_max_size
        )
        if window is not None:
            await self._store.set_idempotency_window(key, *window)

    # -- read ----------------------------------------------------------------

    async def read_new(
        self,
        group: str,
        consumer: str,
        count: int,
        block_ms: Optional[int] = None,
    ) -> ReadResult:
        """Read never-delivered entries across all subjects.

        Args:
            block_ms: ``None`` or ``0`` polls without blocking; a positive
                value blocks up to that many milliseconds.

        Returns:
            ``{subject: {entry_id: payload}}``; ``{}`` on timeout.
        """
        reply = await self._store.read_group(
            group,
            consumer,
            {key: ">" for key in self._stream_keys},
            count,
            block_ms=block_ms or None,
            noack=not self._settings.ack_explicit,
        )
        return self._decode(parse_read_reply(reply), "new")

    async def read_expired(self, group: str, consumer: str, count: int) -> ReadResult:
        """Claim entries idle longer than ``ack_wait_ms`` from any consumer.

        Scans at most ``max_expired_subjects`` randomly chosen subjects when
        configured.  Entries deleted from the stream while pending come back
        as ``None`` and still need to be acked.
        """
        keys: list[str] = list(self._stream_keys)
        limit: int = self._settings.max_expired_subjects
        if limit and len(keys) > limit:
            keys = random.sample(keys, limit)

        result: ReadResult = {}
        remaining: int = count
        for key in keys:
            cursor, claimed, deleted = await self._store.auto_claim(
                key,
                group,
                consumer,
                self._settings.ack_wait_ms,
                self._expired_cursors.get(key, "0-0"),
                remaining,
            )
            self._expired_cursors[key] = cursor

            subject: str = self.subject_from_key(key)
            items: dict[str, Any] = {entry_id: None for entry_id in deleted}
            for entry_id, fields in parse_entries(claimed).items():
                items[entry_id] = self.deserialize(subject, fields)
            if not items:
                continue

            result[subject] = dict(sorted(items.items(), key=lambda kv: entry_id_key(kv[0])))
            self._metrics.read.labels(self._name, subject, "expired").inc(len(items))
            remaining -= len(items)
            if remaining <= 0:
                break

        if result:
            logger.info(
                "Reclaimed expired entries for %s (group=%s -> %s): %s",
                self._name,
                group,
                consumer,
                {subject: len(items) for subject, items in result.items()},
            )
        return result

    async def read_pending(
        self,
        group: str,
        consumer: str,
        count: int,
        cursor: Optional[Cursor] = None,
    ) -> tuple[ReadResult, Cursor]:
        """Re-read entries already in *consumer*'s delivery ledger.

        Args:
            cursor: Value returned by the previous call; ``None`` starts from
                the beginning of the ledger.

        Returns:
            ``(items, next_cursor)``.  Tombstoned entries map to ``None``.
        """
        cursor = dict(cursor) if cursor is not None else {key: "0" for key in self._stream_keys}
        reply = await self._store.read_group(
            group,
            consumer,
            {key: cursor.get(key, "0") for key in self._stream_keys},
            count,
            block_ms=None,
            noack=not self._settings.ack_explicit,
        )

        entries_map: dict[str, Entries] = parse_read_reply(reply)
        for key, entries in entries_map.items():
            if entries:
                cursor[key] = next(reversed(entries))
        return self._decode(entries_map, "pending"), cursor

    def _decode(self, entries_map: dict[str, Entries], phase: str) -> ReadResult:
        result: ReadResult = {}
        for key, entries in entries_map.items():
            if not entries or not key.startswith(self._prefix):
                continue
            subject: str = self.subject_from_key(key)
            if subject not in self._serializers:
                continue
            result[subject] = {
                entry_id: self.deserialize(subject, fields)
                for entry_id, fields in entries.items()
            }
            self._metrics.read.labels(self._name, subject, phase).inc(len(entries))
        return result

    # -- ack / nack ----------------------------------------------------------

    async def ack(self, group: str, subject: str, *ids: str) -> int:
        """Acknowledge entries, deleting them when ``delete_on_ack`` is set.

        Returns:
            Number of entries acknowledged.

        Raises:
            AckModeDisabledError: Bus is in implicit-ack mode.
            UnknownSubjectError: *subject* is not registered.
            UnsupportedFeatureError: DEL_REF / ACKED deletion on Redis < 8.2.
        """
        if not self._settings.ack_explicit:
            raise AckModeDisabledError("no ack mode enabled")
        self._check_subject(subject)
        if not ids:
            return 0

        key: str = self.stream_key(subject)
        policy: DeleteMode = self._settings.delete_policy

        if not self._settings.delete_on_ack:
            acked: int = await self._store.ack(key, group, *ids)
        elif await self.supports_delete_modes():
            codes: list[int] = await self._store.ack_and_delete(key, group, policy, list(ids))
            acked = sum(1 for code in codes if code > 0)
        elif policy is DeleteMode.KEEP_REF:
            acked = await self._store.ack(key, group, *ids)
            await self._store.delete(key, *ids)
        else:
            raise UnsupportedFeatureError(
                f"delete policy {policy.value}", DELETE_MODES_MIN_VERSION
            )

        self._metrics.acked.labels(self._name, subject).inc(acked)
        logger.debug(
            "Acked %d/%d entries on %s (group=%s)", acked, len(ids), key, group
        )
        return acked

    async def nack(
        self,
        group: str,
        consumer: str,
        subject: str,
        entry_id: str,
        nack_delay_ms: Optional[int] = None,
    ) -> int:
        """Hand an entry back for redelivery, or retire it past max delivery.

        The entry must still be owned by *consumer*; otherwise nothing
        happens and 0 is returned.

        Below ``max_delivery`` the entry is claimed by the ``__NACK__``
        sentinel with an idle time chosen so that it becomes reclaimable
        after *nack_delay_ms* (default ``settings.nack_delay_ms``).

        At ``max_delivery`` the entry is acked (with delete propagation),
        then forwarded to the dead-letter bus and/or passed to the
        max-attempts processor.  The ack happens first: if the forward or
        the processor fails, the entry is lost to both paths and the error
        propagates.

        Returns:
            1 if the entry was requeued or retired, 0 otherwise (or the
            max-attempts processor's result).
        """
        if not self._settings.ack_explicit:
            raise AckModeDisabledError("no ack mode enabled")
        if nack_delay_ms is not None and nack_delay_ms > self._settings.ack_wait_ms:
            raise NackDelayExceedsWaitError(nack_delay_ms, self._settings.ack_wait_ms)
        self._check_subject(subject)

        key: str = self.stream_key(subject)

        # ownership may have moved since the read; bail out quietly if so
        pending = await self._store.pending_range(key, group, entry_id, entry_id, 1, consumer)
        if not pending:
            self._metrics.nacked.labels(self._name, subject, "skipped").inc()
            logger.debug(
                "Nack skipped: %s no longer owned by %s (group=%s)", entry_id, consumer, group
            )
            return 0
        record = pending[0]

        max_delivery: int = self._settings.max_delivery
        if max_delivery and record.delivery_count >= max_delivery:
            return await self._retire(group, subject, record.id, record.delivery_count)

        delay: int = nack_delay_ms if nack_delay_ms is not None else self._settings.nack_delay_ms
        new_idle: int = max(0, max(record.idle_ms, self._settings.ack_wait_ms) - delay)
        claimed: list[Any] = await self._store.claim(
            key,
            group,
            NACK_CONSUMER,
            record.idle_ms,
            [record.id],
            idle_ms=new_idle,
            justid=True,
        )

        requeued: bool = bool(claimed) and claimed[0] == record.id
        self._metrics.nacked.labels(
            self._name, subject, "retry" if requeued else "skipped"
        ).inc()
        logger.debug(
            "Nacked %s on %s (group=%s, deliveries=%d, idle=%dms, requeued=%s)",
            record.id,
            key,
            group,
            record.delivery_count,
            new_idle,
            requeued,
        )
        return int(requeued)

    async def _retire(self, group: str, subject: str, entry_id: str, deliveries: int) -> int:
        key: str = self.stream_key(subject)
        has_sink: bool = (
            self._dead_letter_queue is not None or self._max_attempts_processor is not None
        )

        # fetch before the ack: delete_on_ack may remove the payload
        payload: Any = None
        if has_sink:
            entries = parse_entries(await self._store.range(key, entry_id, entry_id, 1))
            if entries.get(entry_id) is not None:
                payload = self.deserialize(subject, entries[entry_id])

        if not await self.ack(group, subject, entry_id):
            return 0

        self._metrics.nacked.labels(self._name, subject, "exhausted").inc()
        logger.warning(
            "Max delivery (%d) exhausted for %s on %s (group=%s, deliveries=%d)",
            self._settings.max_delivery,
            entry_id,
            key,
            group,
            deliveries,
        )

        if not has_sink:
            return 1

        try:
            if self._dead_letter_queue is not None and payload is not None:
                dlq_id: str = await self._dead_letter_queue.add(subject, payload)
                self._metrics.dead_lettered.labels(self._name, subject).inc()
                logger.warning(
                    "DLQ push: %s/%s original=%s dlq=%s/%s",
                    self._name,
                    subject,
                    entry_id,
                    self._dead_letter_queue.name,
                    dlq_id,
                )

            if self._max_attempts_processor is None:
                return 1

            result: Any = self._max_attempts_processor(entry_id, payload)
            if inspect.isawaitable(result):
                result = await result
            return int(result or 0)
        except Exception as exc:
            logger.critical(
                "CRITICAL: %s on %s was acked after max delivery but could not "
                "be dead-lettered: %s",
                entry_id,
                key,
                exc,
            )
            raise
