"""
StreamBus -- Idempotent production options.

Translates the configured :class:`~streambus.bus.types.IdmpMode` into the
``IDMPAUTO`` / ``IDMP`` arguments of ``XADD`` and gates everything on the
server version.  Also holds the version helpers shared with the
delete-mode gating.
"""

from __future__ import annotations

from typing import Optional

from streambus.bus.exceptions import (
    MissingIdempotentIdError,
    MissingProducerIdError,
    UnsupportedFeatureError,
)
from streambus.bus.types import IdempotencyOptions, IdmpMode

DELETE_MODES_MIN_VERSION: str = "8.2.0"
IDEMPOTENCY_MIN_VERSION: str = "8.6.0"


def compare_versions(a: str, b: str) -> int:
    """Compare dotted version strings numerically (``-1`` / ``0`` / ``1``)."""
    a_parts: list[str] = a.split(".")
    b_parts: list[str] = b.split(".")
    for i in range(max(len(a_parts), len(b_parts))):
        left: int = _to_int(a_parts[i]) if i < len(a_parts) else 0
        right: int = _to_int(b_parts[i]) if i < len(b_parts) else 0
        if left != right:
            return -1 if left < right else 1
    return 0


def version_at_least(version: str, minimum: str) -> bool:
    return compare_versions(version, minimum) >= 0


def configure_idempotency(
    mode: IdmpMode,
    producer_id: str,
    idempotent_id: Optional[str],
    supported: bool,
) -> Optional[IdempotencyOptions]:
    """Build the dedup options for one ``XADD``.

    Args:
        mode: Configured idempotency mode.
        producer_id: Producer identity; required unless *mode* is NONE.
        idempotent_id: Per-message key (envelope or call argument);
            required in EXPLICIT mode.
        supported: Whether the server version supports idempotency.

    Returns:
        ``None`` in NONE mode, otherwise the options to attach.

    Raises:
        UnsupportedFeatureError: *mode* is not NONE on an older server.
        MissingProducerIdError: *producer_id* is empty.
        MissingIdempotentIdError: EXPLICIT mode without a key.
    """
    if mode is IdmpMode.NONE:
        return None

    if not supported:
        raise UnsupportedFeatureError("idempotency", IDEMPOTENCY_MIN_VERSION)

    if producer_id == "":
        raise MissingProducerIdError(
            "producer id is required in AUTO or EXPLICIT idempotency mode"
        )

    if mode is IdmpMode.AUTO:
        return IdempotencyOptions(mode, producer_id)

    if idempotent_id is None:
        raise MissingIdempotentIdError(
            "idempotent id is required in EXPLICIT idempotency mode"
        )
    return IdempotencyOptions(mode, producer_id, idempotent_id)


def idempotency_window(
    duration_sec: int,
    max_size: int,
) -> Optional[tuple[Optional[int], Optional[int]]]:
    """Return ``(duration, max_size)`` for ``XCFGSET`` or ``None`` if both
    are left at the server default."""
    duration: Optional[int] = duration_sec if duration_sec > 0 else None
    size: Optional[int] = max_size if max_size > 0 else None
    if duration is None and size is None:
        return None
    return duration, size


def _to_int(part: str) -> int:
    digits: str = ""
    for ch in part:
        if not ch.isdigit():
            break
        digits += ch
    return int(digits) if digits else 0
