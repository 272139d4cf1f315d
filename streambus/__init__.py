"""StreamBus -- Subject-addressed message bus on Redis Streams.

Quick start::

    from streambus.bus import StreamBusBuilder, StreamBusJsonSerializer, RedisStreamStore
    from streambus.config import StreamBusSettings

    store = RedisStreamStore("redis://localhost:6379")
    await store.connect()

    builder = (
        StreamBusBuilder.create("orders")
        .with_store(store)
        .with_settings(StreamBusSettings(max_delivery=5))
        .with_serializers({"order.placed": StreamBusJsonSerializer()})
    )
    await builder.create_producer("checkout").add("order.placed", {"order_id": "o-1"})
    await builder.create_processor("billing", "worker-1", {"order.placed": handle}).process(10)
"""

__version__: str = "0.1.0"
