"""
StreamBus -- Retention policy selector.

Decides which trim directive (if any) rides along with each ``XADD``:

    MINID <op> <cutoff>   drop entries older than ``now - min_age_sec``
    MAXLEN <op> <size>    cap the stream at ``max_size`` entries

With both budgets configured, single appends alternate between the two
so every call pays for exactly one trim.  Batches put the size trim on the
last item and the age trim on the one before it.
"""

from __future__ import annotations

from typing import Optional

from streambus.config.settings import StreamBusSettings
from streambus.bus.types import TrimDirective


class RetentionPolicy:
    """Per-engine trim selector.

    Holds one piece of mutable state, the alternation toggle.  It is not
    locked: an engine instance is expected to be driven by one caller at a
    time.

    Args:
        settings: Bus settings; only the retention fields are read.
    """

    def __init__(self, settings: StreamBusSettings) -> None:
        self._min_age_sec: int = settings.min_age_sec
        self._max_size: int = settings.max_size
        self._operator: str = settings.trim_operator
        self._toggle: bool = False

    @property
    def alternating(self) -> bool:
        return bool(self._min_age_sec and self._max_size)

    def needs_clock(self, count: int) -> bool:
        """Return True if the next :meth:`select` call will emit a MINID.

        Lets the engine skip the ``TIME`` round-trip when only a size trim
        is going to be sent.
        """
        if not self._min_age_sec:
            return False
        if not self._max_size:
            return True
        # alternating: a batch of >= 2 always carries MINID, a single item
        # carries it when the toggle is about to flip to True
        return count >= 2 or not self._toggle

    def select(self, count: int, now_sec: int = 0) -> list[Optional[TrimDirective]]:
        """Return one directive slot per item of an append of *count* items.

        Args:
            count: Number of items in the append call (1 for ``add``).
            now_sec: Server time in seconds; required whenever
                :meth:`needs_clock` returned True.
        """
        if count <= 0:
            return []

        directives: list[Optional[TrimDirective]] = [None] * count

        if self.alternating:
            if count >= 2:
                directives[-2] = self._age(now_sec)
                directives[-1] = self._size()
            else:
                self._toggle = not self._toggle
                directives[-1] = self._age(now_sec) if self._toggle else self._size()
        elif self._max_size:
            directives[-1] = self._size()
        else:
            directives[-1] = self._age(now_sec)

        return directives

    def _age(self, now_sec: int) -> TrimDirective:
        cutoff_ms: int = max(0, (now_sec - self._min_age_sec) * 1000)
        return TrimDirective("MINID", self._operator, cutoff_ms)

    def _size(self) -> TrimDirective:
        return TrimDirective("MAXLEN", self._operator, self._max_size)
