"""
StreamBus -- Reply normalizer for XREADGROUP / XAUTOCLAIM / XRANGE.

Multi-stream reads come back in one of two equivalent outer shapes:

    RESP2  ``[[key, entries], [key, entries], ...]``   (ordered pair list)
    RESP3  ``{key: entries, ...}``                        (keyed map)

and each entry is either ``(id, fields)`` with ``fields`` a dict, a flat
``[k1, v1, k2, v2, ...]`` list, or ``None`` / ``{}`` for a tombstone (the
entry was deleted but is still referenced by the group's PEL).

redis-py's RESP3 callback additionally nests every stream's entries one
level deeper (``{key: [[entry, ...]]}``); that wrapper is unwrapped here.

Everything is folded into the canonical shape::

    {stream_key: {entry_id: {field: value} | None}}

with insertion order preserved.
"""

from __future__ import annotations

from typing import Any, Optional

Entries = dict[str, Optional[dict[str, Any]]]


def parse_read_reply(data: Any) -> dict[str, Entries]:
    """Normalize a multi-stream read reply.

    Returns an empty dict for ``None`` / empty replies (block timeout).
    """
    if not data:
        return {}

    if isinstance(data, dict):
        return {
            _as_str(key): parse_entries(_unwrap(key_data))
            for key, key_data in data.items()
        }

    result: dict[str, Entries] = {}
    for key, key_data in data:
        result[_as_str(key)] = parse_entries(key_data)
    return result


def parse_entries(entries: Any) -> Entries:
    """Normalize a list of ``(id, fields)`` pairs.

    An empty field set is a tombstone: redis-py turns a nil field list into
    ``{}``, and XADD never stores an entry without fields.
    """
    result: Entries = {}
    for entry in entries or ():
        if entry is None or entry[0] is None:
            continue
        entry_id, fields = entry[0], entry[1]
        result[_as_str(entry_id)] = _parse_fields(fields) if fields else None
    return result


def _parse_fields(fields: Any) -> dict[str, Any]:
    if isinstance(fields, dict):
        return {_as_str(k): v for k, v in fields.items()}
    flat = list(fields)
    return {_as_str(flat[i]): flat[i + 1] for i in range(0, len(flat) - 1, 2)}


def _unwrap(key_data: Any) -> Any:
    # [[(id, fields), ...]] -> [(id, fields), ...]
    if (
        isinstance(key_data, list)
        and len(key_data) == 1
        and isinstance(key_data[0], list)
        and (not key_data[0] or isinstance(key_data[0][0], (list, tuple)))
    ):
        return key_data[0]
    return key_data


def _as_str(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)
