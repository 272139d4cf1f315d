"""Prometheus metrics for the stream bus.

Counters are updated by the engine on every call; the gauges are set by
whoever polls :class:`~streambus.bus.info.StreamBusInfo` (the CLI does).

- entries added per subject
- entries read per subject and read phase (pending / expired / new)
- acks, nacks by outcome (retry / exhausted / skipped)
- dead-lettered entries
- group pending count and time lag
"""

import logging
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Info, REGISTRY, start_http_server

logger = logging.getLogger(__name__)


class StreamBusMetrics:
    """Centralized Prometheus metrics collector."""

    def __init__(self, port: int = 8000, registry: CollectorRegistry = REGISTRY):
        self._port = port
        self._started = False

        # === Produce ===
        self.added = Counter(
            'streambus_added_total',
            'Entries appended',
            ['bus', 'subject'],
            registry=registry,
        )

        # === Consume ===
        self.read = Counter(
            'streambus_read_total',
            'Entries returned by a read phase',
            ['bus', 'subject', 'phase'],
            registry=registry,
        )

        self.acked = Counter(
            'streambus_acked_total',
            'Entries acknowledged',
            ['bus', 'subject'],
            registry=registry,
        )

        self.nacked = Counter(
            'streambus_nacked_total',
            'Negative acknowledgements by outcome',
            ['bus', 'subject', 'outcome'],
            registry=registry,
        )

        # === DLQ ===
        self.dead_lettered = Counter(
            'streambus_dead_lettered_total',
            'Entries that exhausted max delivery',
            ['bus', 'subject'],
            registry=registry,
        )

        # === Groups ===
        self.group_pending = Gauge(
            'streambus_group_pending',
            'Pending (delivered, unacked) entries per group',
            ['bus', 'subject', 'group'],
            registry=registry,
        )

        self.group_time_lag = Gauge(
            'streambus_group_time_lag_ms',
            'Milliseconds between last generated and last delivered entry',
            ['bus', 'subject', 'group'],
            registry=registry,
        )

        self.build_info = Info(
            'streambus_build',
            'Build information',
            registry=registry,
        )

    def start_server(self):
        """Start Prometheus HTTP server."""
        if self._started:
            return
        try:
            start_http_server(self._port)
            self._started = True
            logger.info("Prometheus metrics server started on port %d", self._port)
        except OSError as e:
            logger.error("Failed to start metrics server: %s", e)

    def set_build_info(self, version: str, name: str):
        self.build_info.info({'version': version, 'bus': name})


# Singleton
_metrics: Optional[StreamBusMetrics] = None

def get_metrics(port: int = 8000) -> StreamBusMetrics:
    global _metrics
    if _metrics is None:
        _metrics = StreamBusMetrics(port)
    return _metrics
