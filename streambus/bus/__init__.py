"""
StreamBus -- Bus package.

Redis Streams is the only transport.  Each :class:`StreamBus` maps a fixed
set of subjects to streams ``streambus:<name>:<subject>``; consumers read
through consumer groups with at-least-once delivery.

Quick start::

    from streambus.bus import RedisStreamStore, StreamBus, StreamBusConsumer
    from streambus.bus import StreamBusJsonSerializer
    from streambus.config import StreamBusSettings

    store = RedisStreamStore("redis://localhost:6379")
    await store.connect()

    bus = StreamBus("orders", store, StreamBusSettings(), {
        "order.placed": StreamBusJsonSerializer(),
    })
    await bus.add("order.placed", {"order_id": "o-1"})

    consumer = StreamBusConsumer(bus, group="billing", consumer="worker-1")
    for subject, items in (await consumer.read(count=10)).items():
        for entry_id, payload in items.items():
            ...
            await consumer.ack(subject, entry_id)
"""

from streambus.bus.builder import StreamBusBuilder
from streambus.bus.consumer import StreamBusConsumer
from streambus.bus.dlq import DeadLetterQueue
from streambus.bus.info import StreamBusInfo
from streambus.bus.ordered_strict import StreamBusOrderedStrictConsumer
from streambus.bus.processor import FunctionHandler, MessageHandler, StreamBusProcessor
from streambus.bus.producer import StreamBusProducer
from streambus.bus.serializer import StreamBusJsonSerializer, StreamBusSerializer
from streambus.bus.store import RedisStreamStore, StreamStore
from streambus.bus.stream_bus import StreamBus
from streambus.bus.types import DeleteMode, IdmpMode, StreamBusMessage

__all__: list[str] = [
    "StreamBus",
    "StreamBusBuilder",
    "StreamBusConsumer",
    "StreamBusOrderedStrictConsumer",
    "StreamBusProducer",
    "StreamBusProcessor",
    "MessageHandler",
    "FunctionHandler",
    "StreamBusInfo",
    "DeadLetterQueue",
    "StreamBusSerializer",
    "StreamBusJsonSerializer",
    "StreamStore",
    "RedisStreamStore",
    "StreamBusMessage",
    "DeleteMode",
    "IdmpMode",
]
