"""
StreamBus -- Immutable builder.

Collects the wiring for one bus name and hands out engines and the
façades around them.  Every ``with_*`` call returns a new builder; a
builder never mutates, so partially configured builders can be shared
and specialised freely::

    base = (
        StreamBusBuilder.create("orders")
        .with_store(store)
        .with_settings(StreamBusSettings(max_delivery=5))
        .with_serializers({"order.placed": StreamBusJsonSerializer()})
    )
    dlq = base.create_dlq_bus()
    processor = base.with_dlq(dlq).create_processor("billing", "worker-1", handlers)
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, Optional

from streambus.bus.consumer import StreamBusConsumer
from streambus.bus.exceptions import StreamBusConfigError
from streambus.bus.info import StreamBusInfo
from streambus.bus.ordered_strict import StreamBusOrderedStrictConsumer
from streambus.bus.processor import StreamBusProcessor
from streambus.bus.producer import StreamBusProducer
from streambus.bus.serializer import StreamBusSerializer
from streambus.bus.store import StreamStore
from streambus.bus.stream_bus import MaxAttemptsProcessor, StreamBus
from streambus.config.settings import StreamBusSettings

DLQ_PREFIX: str = "dlq:"
ORDERED_CONSUMER_NAME: str = "consumer"


@dataclass(frozen=True)
class StreamBusBuilder:
    name: str
    store: Optional[StreamStore] = None
    settings: Optional[StreamBusSettings] = None
    serializers: Mapping[str, StreamBusSerializer] = field(default_factory=dict)
    subjects: tuple[str, ...] = ()
    dlq: Optional[StreamBus] = None
    max_attempts_processor: Optional[MaxAttemptsProcessor] = None

    @classmethod
    def create(cls, name: str) -> "StreamBusBuilder":
        return cls(name=name)

    # -- with_* --------------------------------------------------------------

    def with_store(self, store: StreamStore) -> "StreamBusBuilder":
        return replace(self, store=store)

    def with_settings(self, settings: StreamBusSettings) -> "StreamBusBuilder":
        return replace(self, settings=settings)

    def with_serializers(self, serializers: Mapping[str, StreamBusSerializer]) -> "StreamBusBuilder":
        return replace(self, serializers=dict(serializers))

    def with_subjects(self, subjects: Iterable[str]) -> "StreamBusBuilder":
        return replace(self, subjects=tuple(subjects))

    def with_dlq(self, dlq: StreamBus) -> "StreamBusBuilder":
        return replace(self, dlq=dlq)

    def with_max_attempts_processor(self, processor: MaxAttemptsProcessor) -> "StreamBusBuilder":
        return replace(self, max_attempts_processor=processor)

    # -- engines -------------------------------------------------------------

    def create_bus(self) -> StreamBus:
        return (
            StreamBus(self.name, self._store(), self._settings(), self._bus_serializers())
            .set_dead_letter_queue(self.dlq)
            .set_max_attempts_processor(self.max_attempts_processor)
        )

    def create_dlq_bus(self) -> StreamBus:
        return StreamBus(
            DLQ_PREFIX + self.name, self._store(), self._settings(), self._bus_serializers()
        )

    def create_info(self) -> StreamBusInfo:
        return StreamBusInfo(self._store(), self.name)

    def create_dlq_info(self) -> StreamBusInfo:
        return StreamBusInfo(self._store(), DLQ_PREFIX + self.name)

    # -- façades -------------------------------------------------------------

    def create_producer(self, producer_id: str = "") -> StreamBusProducer:
        return StreamBusProducer(self.create_bus(), producer_id)

    def create_consumer(
        self, group: str, consumer: str, subjects: Iterable[str] = ()
    ) -> StreamBusConsumer:
        return StreamBusConsumer(self._scoped(subjects).create_bus(), group, consumer)

    def create_processor(
        self,
        group: str,
        consumer: str,
        handlers: Mapping[str, Any],
        **options: Any,
    ) -> StreamBusProcessor:
        settings: StreamBusSettings = self._settings()
        options.setdefault("ack", settings.ack_explicit)
        options.setdefault("nack", settings.ack_explicit)
        return StreamBusProcessor(
            self.create_consumer(group, consumer, handlers.keys()), handlers, **options
        )

    def create_ordered_strict_consumer(
        self,
        group: str,
        subjects: Iterable[str] = (),
        consumer: str = ORDERED_CONSUMER_NAME,
    ) -> StreamBusOrderedStrictConsumer:
        scoped = self._scoped(subjects)
        bus: StreamBus = scoped.create_bus()
        return StreamBusOrderedStrictConsumer(
            bus, scoped.create_info(), group, consumer, bus.subjects
        )

    def create_ordered_strict_processor(
        self,
        group: str,
        handlers: Mapping[str, Any],
        **options: Any,
    ) -> StreamBusProcessor:
        settings: StreamBusSettings = self._settings()
        options.setdefault("ack", settings.ack_explicit)
        options["nack"] = False
        return StreamBusProcessor(
            self.create_ordered_strict_consumer(group, handlers.keys()), handlers, **options
        )

    # -- helpers -------------------------------------------------------------

    def _scoped(self, subjects: Iterable[str]) -> "StreamBusBuilder":
        subjects = tuple(subjects)
        return self.with_subjects(subjects) if subjects else self

    def _store(self) -> StreamStore:
        if self.store is None:
            raise StreamBusConfigError("store is not defined")
        return self.store

    def _settings(self) -> StreamBusSettings:
        if self.settings is None:
            raise StreamBusConfigError("settings is not defined")
        return self.settings

    def _bus_serializers(self) -> dict[str, StreamBusSerializer]:
        if not self.serializers:
            raise StreamBusConfigError("serializers are empty")
        if not self.subjects:
            return dict(self.serializers)

        missing: list[str] = [s for s in self.subjects if s not in self.serializers]
        if missing:
            raise StreamBusConfigError(
                "serializers are not defined for the following subjects: "
                + ", ".join(missing)
            )
        return {subject: self.serializers[subject] for subject in self.subjects}
