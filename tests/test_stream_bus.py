"""Tests for the bus engine against the in-memory store."""

from unittest.mock import AsyncMock

import pytest

from streambus.bus.exceptions import (
    AckModeDisabledError,
    EmptyGroupNameError,
    MissingIdempotentIdError,
    MissingProducerIdError,
    NackDelayExceedsWaitError,
    StreamBusConfigError,
    UnknownSubjectError,
    UnsupportedFeatureError,
)
from streambus.bus.info import StreamBusInfo
from streambus.bus.serializer import StreamBusJsonSerializer
from streambus.bus.stream_bus import NACK_CONSUMER, StreamBus
from streambus.bus.types import DeleteMode, IdmpMode, StreamBusMessage, entry_id_key
from streambus.config.settings import StreamBusSettings

ACK_WAIT = 1_800_000


class TestConstruction:

    def test_requires_serializers(self, store):
        with pytest.raises(StreamBusConfigError):
            StreamBus("test", store, StreamBusSettings(), {})

    @pytest.mark.parametrize("subject", ["has space", "a:b", "", "star*"])
    def test_invalid_subject(self, store, subject):
        with pytest.raises(StreamBusConfigError):
            StreamBus("test", store, StreamBusSettings(), {subject: StreamBusJsonSerializer()})

    def test_subjects_and_keys(self, bus):
        assert bus.subjects == ["orders", "users"]
        assert bus.stream_key("orders") == "streambus:test:orders"
        assert bus.subject_from_key("streambus:test:users") == "users"

    def test_fluent_setters(self, bus, make_bus):
        dlq = make_bus("dlq:test")
        assert bus.set_dead_letter_queue(dlq) is bus
        assert bus.dead_letter_queue is dlq


class TestAppend:

    @pytest.mark.asyncio
    async def test_unknown_subject(self, bus):
        with pytest.raises(UnknownSubjectError):
            await bus.add("nope", {})

    @pytest.mark.asyncio
    async def test_add_returns_id(self, bus, store):
        entry_id = await bus.add("orders", {"n": 1})
        assert entry_id in store.streams["streambus:test:orders"].entries

    @pytest.mark.asyncio
    async def test_add_many_empty_skips_store(self, bus, store):
        assert await bus.add_many("orders", []) == []
        assert "append" not in store.calls

    @pytest.mark.asyncio
    async def test_single_appends_alternate_trims(self, bus, store):
        for i in range(4):
            await bus.add("orders", {"n": i})
        strategies = [request.trim.strategy for _, request in store.appended]
        assert strategies == ["MINID", "MAXLEN", "MINID", "MAXLEN"]
        assert store.calls.count("server_time") == 2

    @pytest.mark.asyncio
    async def test_batch_trims(self, bus, store):
        await bus.add_many("orders", [{"n": i} for i in range(5)])
        trims = [request.trim for _, request in store.appended]
        assert trims[:3] == [None, None, None]
        assert trims[3].strategy == "MINID"
        assert trims[4].strategy == "MAXLEN"

    @pytest.mark.asyncio
    async def test_size_trim_applied(self, make_bus, store):
        bus = make_bus(min_age_sec=0, max_size=3, exact_limits=True)
        for i in range(5):
            await bus.add("orders", {"n": i})
        assert await store.length("streambus:test:orders") == 3

    @pytest.mark.asyncio
    async def test_delete_policy_attached_when_supported(self, make_bus, store):
        bus = make_bus(delete_policy=DeleteMode.ACKED)
        await bus.add("orders", {"n": 1})
        assert store.appended[0][1].delete_policy is DeleteMode.ACKED

    @pytest.mark.asyncio
    async def test_delete_policy_omitted_on_old_server(self, bus, store):
        store.version = "7.4.0"
        await bus.add("orders", {"n": 1})
        assert store.appended[0][1].delete_policy is None

    @pytest.mark.asyncio
    async def test_explicit_entry_id(self, bus):
        entry_id = await bus.add("orders", StreamBusMessage({"n": 1}, id="5-1"))
        assert entry_id == "5-1"

    @pytest.mark.asyncio
    async def test_version_fetched_once(self, bus, store):
        for i in range(3):
            await bus.add("orders", {"n": i})
        assert store.calls.count("server_version") == 1


class TestIdempotentAppend:

    @pytest.mark.asyncio
    async def test_auto_mode_deduplicates(self, make_bus, store):
        bus = make_bus(idmp_mode=IdmpMode.AUTO)
        first = await bus.add("orders", {"n": 1}, producer_id="p1")
        second = await bus.add("orders", {"n": 1}, producer_id="p1")
        assert first == second
        assert await store.length("streambus:test:orders") == 1

    @pytest.mark.asyncio
    async def test_explicit_mode_envelope_key(self, make_bus):
        bus = make_bus(idmp_mode=IdmpMode.EXPLICIT)
        first = await bus.add("orders", StreamBusMessage({"n": 1}, idempotent_id="k1"), "p1")
        second = await bus.add("orders", StreamBusMessage({"n": 2}, idempotent_id="k1"), "p1")
        third = await bus.add("orders", {"n": 3}, "p1", idempotent_id="k2")
        assert first == second
        assert third != first

    @pytest.mark.asyncio
    async def test_explicit_mode_requires_key(self, make_bus):
        bus = make_bus(idmp_mode=IdmpMode.EXPLICIT)
        with pytest.raises(MissingIdempotentIdError):
            await bus.add("orders", {"n": 1}, producer_id="p1")

    @pytest.mark.asyncio
    async def test_requires_producer(self, make_bus):
        bus = make_bus(idmp_mode=IdmpMode.AUTO)
        with pytest.raises(MissingProducerIdError):
            await bus.add("orders", {"n": 1})

    @pytest.mark.asyncio
    async def test_unsupported_server(self, make_bus, store):
        store.version = "8.4.0"
        bus = make_bus(idmp_mode=IdmpMode.AUTO)
        with pytest.raises(UnsupportedFeatureError):
            await bus.add("orders", {"n": 1}, producer_id="p1")


class TestCreateGroup:

    @pytest.mark.asyncio
    async def test_empty_name(self, bus):
        with pytest.raises(EmptyGroupNameError):
            await bus.create_group("")

    @pytest.mark.asyncio
    async def test_idempotent(self, bus, store):
        for _ in range(3):
            assert await bus.create_group("g") is True
        assert store.calls.count("create_group") == 2

    @pytest.mark.asyncio
    async def test_concurrent_creator_counts_as_success(self, bus, store, monkeypatch):
        await store.create_group("streambus:test:orders", "g", "0")
        await store.create_group("streambus:test:users", "g", "0")
        monkeypatch.setattr(store, "exists", AsyncMock(return_value=False))
        assert await bus.create_group("g") is True

    @pytest.mark.asyncio
    async def test_idempotency_window_on_fresh_groups(self, make_bus, store):
        bus = make_bus(idmp_mode=IdmpMode.AUTO, idmp_duration_sec=60)
        await bus.create_group("g")
        assert store.idempotency_windows == {
            "streambus:test:orders": (60, None),
            "streambus:test:users": (60, None),
        }

    @pytest.mark.asyncio
    async def test_no_window_without_idempotency(self, make_bus, store):
        bus = make_bus(idmp_duration_sec=60)
        await bus.create_group("g")
        assert store.idempotency_windows == {}


class TestReadNew:

    @pytest.mark.asyncio
    async def test_hundred_items_in_order(self, bus):
        items = [{"n": i} for i in range(100)]
        ids = await bus.add_many("orders", items)
        assert len(ids) == 100

        assert await bus.create_group("g") is True
        result = await bus.read_new("g", "c", 100)

        assert list(result) == ["orders"]
        assert list(result["orders"]) == sorted(ids, key=entry_id_key)
        assert list(result["orders"].values()) == items

    @pytest.mark.asyncio
    async def test_empty_subjects_omitted(self, bus):
        await bus.add("users", {"u": 1})
        await bus.create_group("g")
        assert list(await bus.read_new("g", "c", 10)) == ["users"]

    @pytest.mark.asyncio
    async def test_nothing_new(self, bus):
        await bus.create_group("g")
        assert await bus.read_new("g", "c", 10) == {}

    @pytest.mark.asyncio
    async def test_zero_block_is_a_poll(self):
        store = AsyncMock()
        store.read_group.return_value = []
        bus = StreamBus("test", store, StreamBusSettings(), {"orders": StreamBusJsonSerializer()})
        await bus.read_new("g", "c", 10, block_ms=0)
        assert store.read_group.call_args.kwargs["block_ms"] is None
        await bus.read_new("g", "c", 10, block_ms=250)
        assert store.read_group.call_args.kwargs["block_ms"] == 250

    @pytest.mark.asyncio
    async def test_implicit_ack_mode(self, make_bus):
        bus = make_bus(ack_explicit=False)
        entry_id = await bus.add("orders", {"n": 1})
        await bus.create_group("g")
        assert await bus.read_new("g", "c", 10) == {"orders": {entry_id: {"n": 1}}}

        pending, _ = await bus.read_pending("g", "c", 10)
        assert pending == {}
        with pytest.raises(AckModeDisabledError):
            await bus.ack("g", "orders", entry_id)
        with pytest.raises(AckModeDisabledError):
            await bus.nack("g", "c", "orders", entry_id)


class TestReadPending:

    @pytest.mark.asyncio
    async def test_cursor_pages_through_ledger(self, bus):
        ids = await bus.add_many("orders", [{"n": i} for i in range(3)])
        await bus.create_group("g")
        await bus.read_new("g", "c", 10)

        first, cursor = await bus.read_pending("g", "c", 2)
        assert list(first["orders"]) == ids[:2]
        second, cursor = await bus.read_pending("g", "c", 2, cursor)
        assert list(second["orders"]) == ids[2:]
        third, _ = await bus.read_pending("g", "c", 2, cursor)
        assert third == {}

    @pytest.mark.asyncio
    async def test_other_consumer_sees_nothing(self, bus):
        await bus.add("orders", {"n": 1})
        await bus.create_group("g")
        await bus.read_new("g", "c1", 10)
        items, _ = await bus.read_pending("g", "c2", 10)
        assert items == {}


class TestReadExpired:

    @pytest.mark.asyncio
    async def test_reclaims_after_ack_wait(self, bus, store):
        entry_id = await bus.add("orders", {"n": 1})
        await bus.create_group("g")
        await bus.read_new("g", "c1", 10)

        assert await bus.read_expired("g", "c2", 10) == {}
        store.advance(ACK_WAIT)
        assert await bus.read_expired("g", "c2", 10) == {"orders": {entry_id: {"n": 1}}}

        # now owned by c2, not reclaimable again right away
        assert await bus.read_expired("g", "c3", 10) == {}

    @pytest.mark.asyncio
    async def test_deleted_entry_surfaces_as_none(self, bus, store):
        entry_id = await bus.add("orders", {"n": 1})
        await bus.create_group("g")
        await bus.read_new("g", "c1", 10)
        await store.delete("streambus:test:orders", entry_id)

        store.advance(ACK_WAIT)
        assert await bus.read_expired("g", "c2", 10) == {"orders": {entry_id: None}}

    @pytest.mark.asyncio
    async def test_stops_at_count(self, bus, store):
        await bus.add_many("orders", [{"n": i} for i in range(3)])
        await bus.add_many("users", [{"u": i} for i in range(3)])
        await bus.create_group("g")
        await bus.read_new("g", "c1", 10)
        store.advance(ACK_WAIT)

        result = await bus.read_expired("g", "c2", 2)
        assert sum(len(items) for items in result.values()) == 2

    @pytest.mark.asyncio
    async def test_subject_sampling(self, make_bus, store):
        bus = make_bus(max_expired_subjects=1)
        await bus.add("orders", {"n": 1})
        await bus.add("users", {"u": 1})
        await bus.create_group("g")
        await bus.read_new("g", "c1", 10)
        store.advance(ACK_WAIT)

        result = await bus.read_expired("g", "c2", 10)
        assert len(result) == 1
        assert store.calls.count("auto_claim") == 1


class TestAck:

    @pytest.mark.asyncio
    async def test_ack_clears_pending(self, bus):
        ids = await bus.add_many("orders", [{"n": 1}, {"n": 2}])
        await bus.create_group("g")
        await bus.read_new("g", "c", 10)

        assert await bus.ack("g", "orders", *ids) == 2
        assert await bus.ack("g", "orders", *ids) == 0
        assert await bus.ack("g", "orders") == 0

    @pytest.mark.asyncio
    async def test_unknown_subject(self, bus):
        with pytest.raises(UnknownSubjectError):
            await bus.ack("g", "nope", "1-0")

    @pytest.mark.asyncio
    async def test_keep_ref_delete_on_ack_leaves_tombstone(self, make_bus, store):
        bus = make_bus(delete_on_ack=True, delete_policy=DeleteMode.KEEP_REF)
        info = StreamBusInfo(store, "test")
        entry_id = await bus.add("orders", {"n": 1})
        await bus.create_group("A")
        await bus.create_group("B")
        await bus.read_new("A", "a", 10)
        await bus.read_new("B", "b", 10)

        assert await bus.ack("A", "orders", entry_id) == 1

        assert await info.stream_length("orders") == 0
        assert await info.group_pending("A", "orders") == 0
        assert await info.group_pending("B", "orders") == 1
        items, _ = await bus.read_pending("B", "b", 10)
        assert items == {"orders": {entry_id: None}}

    @pytest.mark.asyncio
    async def test_del_ref_purges_other_groups(self, make_bus, store):
        bus = make_bus(delete_on_ack=True, delete_policy=DeleteMode.DEL_REF)
        info = StreamBusInfo(store, "test")
        entry_id = await bus.add("orders", {"n": 1})
        await bus.create_group("A")
        await bus.create_group("B")
        await bus.read_new("A", "a", 10)
        await bus.read_new("B", "b", 10)

        await bus.ack("A", "orders", entry_id)
        assert await info.group_pending("B", "orders") == 0

    @pytest.mark.asyncio
    async def test_acked_policy_waits_for_every_group(self, make_bus, store):
        bus = make_bus(delete_on_ack=True, delete_policy=DeleteMode.ACKED)
        info = StreamBusInfo(store, "test")
        entry_id = await bus.add("orders", {"n": 1})
        await bus.create_group("A")
        await bus.create_group("B")
        await bus.read_new("A", "a", 10)
        await bus.read_new("B", "b", 10)

        assert await bus.ack("A", "orders", entry_id) == 1
        assert await info.stream_length("orders") == 1
        assert await bus.ack("B", "orders", entry_id) == 1
        assert await info.stream_length("orders") == 0

    @pytest.mark.asyncio
    async def test_keep_ref_fallback_on_old_server(self, make_bus, store):
        store.version = "7.4.0"
        bus = make_bus(delete_on_ack=True, delete_policy=DeleteMode.KEEP_REF)
        entry_id = await bus.add("orders", {"n": 1})
        await bus.create_group("g")
        await bus.read_new("g", "c", 10)

        assert await bus.ack("g", "orders", entry_id) == 1
        assert "ack_and_delete" not in store.calls
        assert await store.length("streambus:test:orders") == 0

    @pytest.mark.asyncio
    async def test_other_policies_unsupported_on_old_server(self, make_bus, store):
        store.version = "8.0.0"
        bus = make_bus(delete_on_ack=True, delete_policy=DeleteMode.DEL_REF)
        with pytest.raises(UnsupportedFeatureError):
            await bus.ack("g", "orders", "1-0")


class TestNack:

    async def _delivered(self, bus, consumer="c"):
        entry_id = await bus.add("orders", {"n": 1})
        await bus.create_group("g")
        await bus.read_new("g", consumer, 10)
        return entry_id

    @pytest.mark.asyncio
    async def test_delay_exceeds_wait(self, bus):
        with pytest.raises(NackDelayExceedsWaitError):
            await bus.nack("g", "c", "orders", "1-0", ACK_WAIT + 1)

    @pytest.mark.asyncio
    async def test_not_owned_returns_zero(self, bus):
        entry_id = await self._delivered(bus)
        assert await bus.nack("g", "other", "orders", entry_id) == 0

    @pytest.mark.asyncio
    async def test_requeue_is_immediately_reclaimable(self, bus, store):
        entry_id = await self._delivered(bus)
        assert await bus.nack("g", "c", "orders", entry_id) == 1

        rows = await store.pending_range("streambus:test:orders", "g", "-", "+", 10)
        assert rows[0].consumer == NACK_CONSUMER
        assert rows[0].delivery_count == 1

        assert await bus.read_expired("g", "c2", 10) == {"orders": {entry_id: {"n": 1}}}

    @pytest.mark.asyncio
    async def test_requeue_honours_delay(self, bus, store):
        entry_id = await self._delivered(bus)
        assert await bus.nack("g", "c", "orders", entry_id, 1000) == 1

        assert await bus.read_expired("g", "c2", 10) == {}
        store.advance(1000)
        assert await bus.read_expired("g", "c2", 10) == {"orders": {entry_id: {"n": 1}}}

    @pytest.mark.asyncio
    async def test_max_delivery_forwards_to_dlq_once(self, make_bus, store):
        bus = make_bus(max_delivery=2)
        dlq = make_bus("dlq:test")
        bus.set_dead_letter_queue(dlq)
        info = StreamBusInfo(store, "test")
        entry_id = await self._delivered(bus)

        assert await bus.nack("g", "c", "orders", entry_id) == 1
        assert await bus.read_expired("g", "c", 10) == {"orders": {entry_id: {"n": 1}}}
        assert await bus.nack("g", "c", "orders", entry_id) == 1

        assert await info.group_pending("g", "orders") == 0
        assert await StreamBusInfo(store, "dlq:test").stream_length("orders") == 1
        dlq_entries = await store.range("streambus:dlq:test:orders", "-", "+")
        assert dlq.deserialize("orders", dlq_entries[0][1]) == {"n": 1}

        store.advance(ACK_WAIT)
        assert await bus.read_expired("g", "c", 10) == {}
        assert await bus.read_new("g", "c", 10) == {}

    @pytest.mark.asyncio
    async def test_max_delivery_without_sink_drops(self, make_bus, store):
        bus = make_bus(max_delivery=1)
        entry_id = await self._delivered(bus)
        assert await bus.nack("g", "c", "orders", entry_id) == 1
        assert await StreamBusInfo(store, "test").group_pending("g", "orders") == 0

    @pytest.mark.asyncio
    async def test_max_attempts_processor_result(self, make_bus):
        seen = []

        async def on_exhausted(entry_id, payload):
            seen.append((entry_id, payload))
            return 7

        bus = make_bus(max_delivery=1).set_max_attempts_processor(on_exhausted)
        entry_id = await self._delivered(bus)
        assert await bus.nack("g", "c", "orders", entry_id) == 7
        assert seen == [(entry_id, {"n": 1})]

    @pytest.mark.asyncio
    async def test_sync_processor_falsy_result(self, make_bus):
        bus = make_bus(max_delivery=1).set_max_attempts_processor(lambda i, p: None)
        entry_id = await self._delivered(bus)
        assert await bus.nack("g", "c", "orders", entry_id) == 0

    @pytest.mark.asyncio
    async def test_payload_fetched_before_delete_on_ack(self, make_bus):
        seen = []
        bus = make_bus(max_delivery=1, delete_on_ack=True)
        bus.set_max_attempts_processor(lambda i, p: seen.append(p) or 1)
        entry_id = await self._delivered(bus)
        assert await bus.nack("g", "c", "orders", entry_id) == 1
        assert seen == [{"n": 1}]

    @pytest.mark.asyncio
    async def test_dlq_failure_after_ack_propagates(self, make_bus, store):
        dlq = AsyncMock()
        dlq.name = "dlq:test"
        dlq.add.side_effect = RuntimeError("dlq down")
        bus = make_bus(max_delivery=1).set_dead_letter_queue(dlq)
        entry_id = await self._delivered(bus)

        with pytest.raises(RuntimeError):
            await bus.nack("g", "c", "orders", entry_id)
        # ack-then-forward: the entry is gone from the group either way
        assert await StreamBusInfo(store, "test").group_pending("g", "orders") == 0
