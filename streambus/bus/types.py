"""
StreamBus -- Shared value types for the bus engine.

Small immutable records passed between the engine, the retention and
idempotency helpers, and the :class:`~streambus.bus.store.StreamStore`
adapter.  None of them talk to Redis on their own.

``DeleteMode`` / ``IdmpMode`` live with the settings model and are
re-exported here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NamedTuple, Optional

from streambus.config.settings import DeleteMode, IdmpMode

__all__ = [
    "AppendRequest",
    "DeleteMode",
    "IdempotencyOptions",
    "IdmpMode",
    "PendingEntry",
    "StreamBusMessage",
    "TrimDirective",
    "entry_id_key",
]


# ---------------------------------------------------------------------------
# Envelopes and directives
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamBusMessage:
    """Wraps a payload to override the entry ID and/or idempotency key.

    Args:
        item: The payload handed to the subject's serializer.
        id: Explicit entry ID (``"<ms>-<seq>"``).  ``None`` lets Redis
            assign one.
        idempotent_id: Per-message key used in ``EXPLICIT`` idempotency
            mode.
    """

    item: Any
    id: Optional[str] = None
    idempotent_id: Optional[str] = None


@dataclass(frozen=True)
class TrimDirective:
    """``MAXLEN`` / ``MINID`` trim attached to a single ``XADD``."""

    strategy: str  # "MAXLEN" | "MINID"
    operator: str  # "=" | "~"
    threshold: int

    def as_args(self) -> list[str]:
        return [self.strategy, self.operator, str(self.threshold)]


@dataclass(frozen=True)
class IdempotencyOptions:
    """Store-level dedup arguments for a single ``XADD``."""

    mode: IdmpMode
    producer_id: str
    idempotent_id: Optional[str] = None

    def as_args(self) -> list[str]:
        if self.mode is IdmpMode.AUTO:
            return ["IDMPAUTO", self.producer_id]
        return ["IDMP", self.producer_id, str(self.idempotent_id)]


@dataclass(frozen=True)
class AppendRequest:
    """One entry to append, fully resolved by the engine."""

    fields: dict[str, str]
    entry_id: str = "*"
    trim: Optional[TrimDirective] = None
    delete_policy: Optional[DeleteMode] = None
    idempotency: Optional[IdempotencyOptions] = None


class PendingEntry(NamedTuple):
    """One row of ``XPENDING`` extended form."""

    id: str
    consumer: str
    idle_ms: int
    delivery_count: int


# ---------------------------------------------------------------------------
# Entry IDs
# ---------------------------------------------------------------------------

def entry_id_key(entry_id: str) -> tuple[int, int]:
    """Sort key for ``"<ms>-<seq>"`` entry IDs.

    Plain string ordering breaks as soon as the millisecond part changes
    width, so IDs are compared numerically.
    """
    major, _, minor = entry_id.partition("-")
    return int(major), int(minor or 0)
