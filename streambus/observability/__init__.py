"""StreamBus -- Observability package.

Prometheus metrics and logging setup.
"""

from streambus.observability.log_setup import setup_logging
from streambus.observability.metrics import StreamBusMetrics, get_metrics

__all__: list[str] = [
    "StreamBusMetrics",
    "get_metrics",
    "setup_logging",
]
