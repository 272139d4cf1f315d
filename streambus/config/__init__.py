"""StreamBus -- Configuration package."""

from streambus.config.settings import (
    DeleteMode,
    IdmpMode,
    StreamBusConfig,
    StreamBusSettings,
    get_config,
)

__all__: list[str] = [
    "DeleteMode",
    "IdmpMode",
    "StreamBusConfig",
    "StreamBusSettings",
    "get_config",
]
