"""StreamBus -- Producer façade: binds a producer identity to a bus."""

from __future__ import annotations

from typing import Any, Iterable, Optional

from streambus.bus.stream_bus import StreamBus


class StreamBusProducer:
    """Publishes to a bus under a fixed ``producer_id``.

    The producer id is what ``IDMPAUTO`` / ``IDMP`` deduplicate on, so
    give every logical producer a stable one when idempotency is enabled.
    """

    def __init__(self, bus: StreamBus, producer_id: str = "") -> None:
        self._bus: StreamBus = bus
        self._producer_id: str = producer_id

    @property
    def producer_id(self) -> str:
        return self._producer_id

    async def add(self, subject: str, item: Any, idempotent_id: Optional[str] = None) -> str:
        return await self._bus.add(subject, item, self._producer_id, idempotent_id)

    async def add_many(self, subject: str, items: Iterable[Any]) -> list[str]:
        return await self._bus.add_many(subject, items, self._producer_id)
