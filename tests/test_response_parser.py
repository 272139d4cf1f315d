"""Tests for the read-reply normalizer."""

from streambus.bus.response_parser import parse_entries, parse_read_reply


class TestParseReadReply:

    def test_empty(self):
        assert parse_read_reply(None) == {}
        assert parse_read_reply([]) == {}
        assert parse_read_reply({}) == {}

    def test_resp2_pairs(self):
        reply = [
            ["streambus:t:a", [("1-0", {"json": "1"}), ("1-1", {"json": "2"})]],
            ["streambus:t:b", [("2-0", {"json": "3"})]],
        ]
        result = parse_read_reply(reply)
        assert list(result) == ["streambus:t:a", "streambus:t:b"]
        assert result["streambus:t:a"] == {"1-0": {"json": "1"}, "1-1": {"json": "2"}}

    def test_resp3_map(self):
        reply = {"streambus:t:a": [["1-0", ["json", "1"]]]}
        assert parse_read_reply(reply) == {"streambus:t:a": {"1-0": {"json": "1"}}}

    def test_resp3_nested_entries_unwrapped(self):
        reply = {"streambus:t:a": [[("1-0", {"json": "1"}), ("1-1", {"json": "2"})]]}
        result = parse_read_reply(reply)
        assert result == {"streambus:t:a": {"1-0": {"json": "1"}, "1-1": {"json": "2"}}}

    def test_both_shapes_agree(self):
        resp2 = [["k", [("5-0", {"f": "v"})]]]
        resp3 = {"k": [[("5-0", {"f": "v"})]]}
        assert parse_read_reply(resp2) == parse_read_reply(resp3)

    def test_tombstone(self):
        reply = [["k", [("1-0", None), ("1-1", {"json": "x"})]]]
        assert parse_read_reply(reply)["k"] == {"1-0": None, "1-1": {"json": "x"}}

    def test_bytes_decoded(self):
        reply = [[b"k", [(b"1-0", {b"json": b"1"})]]]
        assert parse_read_reply(reply) == {"k": {"1-0": {"json": b"1"}}}


class TestParseEntries:

    def test_flat_field_list(self):
        assert parse_entries([["1-0", ["a", "1", "b", "2"]]]) == {"1-0": {"a": "1", "b": "2"}}

    def test_order_preserved(self):
        entries = [("3-0", {}), ("1-0", {}), ("2-0", {})]
        assert list(parse_entries(entries)) == ["3-0", "1-0", "2-0"]

    def test_none_rows_skipped(self):
        assert parse_entries([None, ("1-0", {"a": "1"})]) == {"1-0": {"a": "1"}}

    def test_empty_fields_are_tombstones(self):
        entries = [("1-0", {}), ("1-1", []), ("1-2", {"json": "x"})]
        assert parse_entries(entries) == {"1-0": None, "1-1": None, "1-2": {"json": "x"}}

    def test_placeholder_rows_skipped(self):
        # redis-py maps a nil entry to (None, None)
        assert parse_entries([(None, None), ("1-0", {"a": "1"})]) == {"1-0": {"a": "1"}}
