"""
StreamBus -- Idempotency-key helpers.

Deterministic keys for ``EXPLICIT`` idempotency mode (``IDMP <producer>
<key>``).  The same logical message must always produce the same key
regardless of which process publishes it, so every helper here is a pure
function of its inputs.

* ``make_idempotent_id``   -- key from a tuple of identifying parts.
* ``payload_idempotent_id`` -- key from the JSON form of a payload.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def make_idempotent_id(*parts: Any) -> str:
    """Build a 64-char hex key from *parts* (e.g. ``"order", order_id, version``).

    Parts are joined with ``:`` after ``str()``, so ``("a", 1)`` and
    ``("a", "1")`` produce the same key.

    Raises:
        ValueError: No parts given.
    """
    if not parts:
        raise ValueError("at least one part is required")
    payload = ":".join(str(part) for part in parts)
    return hashlib.sha256(payload.encode()).hexdigest()


def payload_idempotent_id(payload: Any) -> str:
    """Return a stable SHA-256 hex digest of a JSON-serialisable payload.

    Keys are sorted recursively so that insertion order never affects the
    key.
    """
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
