"""
StreamBus -- Payload codecs.

A serializer turns one payload into the flat ``{field: value}`` mapping
stored in a stream entry, and back.  Each subject on a bus is bound to
exactly one serializer for the bus's lifetime.

:class:`StreamBusJsonSerializer` stores the payload as a single ``json``
field.  It accepts either explicit ``to_dict`` / ``from_dict`` callables
or a pydantic model class::

    serializer = StreamBusJsonSerializer(model=OrderPlaced)
    fields = serializer.serialize(OrderPlaced(order_id="o-1"))
    assert serializer.deserialize(fields) == OrderPlaced(order_id="o-1")
"""

from __future__ import annotations

import json
from typing import Any, Callable, Mapping, Optional, Protocol

from pydantic import BaseModel

from streambus.bus.exceptions import CodecError

JSON_FIELD: str = "json"


class StreamBusSerializer(Protocol):
    """Codec contract for one subject."""

    def serialize(self, item: Any) -> dict[str, str]:
        ...

    def deserialize(self, fields: Mapping[str, Any]) -> Any:
        ...


class StreamBusJsonSerializer:
    """JSON codec with optional conversion hooks.

    Args:
        to_dict: Converts a payload into a JSON-serialisable value.
        from_dict: Rebuilds a payload from the decoded JSON value.
        model: Pydantic model class; shorthand for ``model_dump`` /
            ``model_validate`` hooks.  Mutually exclusive with the
            callables.
    """

    def __init__(
        self,
        to_dict: Optional[Callable[[Any], Any]] = None,
        from_dict: Optional[Callable[[Any], Any]] = None,
        model: Optional[type[BaseModel]] = None,
    ) -> None:
        if model is not None and (to_dict is not None or from_dict is not None):
            raise ValueError("pass either model or to_dict/from_dict, not both")
        if model is not None:
            to_dict = _dump_model
            from_dict = model.model_validate
        self._to_dict = to_dict
        self._from_dict = from_dict

    def serialize(self, item: Any) -> dict[str, str]:
        try:
            data = self._to_dict(item) if self._to_dict else item
            return {JSON_FIELD: json.dumps(data, separators=(",", ":"), ensure_ascii=False)}
        except (TypeError, ValueError) as exc:
            raise CodecError("failed to serialize data") from exc

    def deserialize(self, fields: Mapping[str, Any]) -> Any:
        raw: Any = fields.get(JSON_FIELD, "")
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            data = json.loads(raw)
            return self._from_dict(data) if self._from_dict else data
        except (TypeError, ValueError) as exc:
            raise CodecError("failed to deserialize data") from exc


def _dump_model(item: Any) -> Any:
    if not isinstance(item, BaseModel):
        raise TypeError(f"expected a pydantic model, got {type(item).__name__}")
    return item.model_dump(mode="json")
