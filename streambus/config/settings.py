"""
StreamBus -- Configuration.

Two layers:

* :class:`StreamBusSettings` -- immutable per-bus policy (retention, ack,
  delivery, idempotency).  Validated at construction; invalid combinations
  raise ``pydantic.ValidationError``.
* :class:`StreamBusConfig` -- process-level knobs loaded via
  pydantic-settings.  Environment variables override defaults using the
  ``STREAMBUS_`` prefix (e.g. ``STREAMBUS_REDIS_URL``); per-bus settings
  are nested (``STREAMBUS_BUS__MAX_DELIVERY=5``).

Usage:
    from streambus.config.settings import get_config
    config = get_config()          # cached singleton
    print(config.bus.ack_wait_ms)
"""

from __future__ import annotations

import enum
from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DeleteMode(str, enum.Enum):
    """Reference policy used when entries are deleted (Redis >= 8.2)."""

    KEEP_REF = "KEEPREF"  # keep PEL references in every group
    DEL_REF = "DELREF"    # purge PEL references from every group
    ACKED = "ACKED"       # delete only once every group has acked


class IdmpMode(str, enum.Enum):
    """Producer-side deduplication mode (Redis >= 8.6)."""

    NONE = "none"
    AUTO = "auto"          # IDMPAUTO -- Redis hashes the content
    EXPLICIT = "explicit"  # IDMP -- caller supplies a key per message


class StreamBusSettings(BaseModel):
    """Per-bus retention, delivery and ack policy."""

    model_config = ConfigDict(frozen=True)

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    min_age_sec: int = Field(default=86400, ge=0)
    max_size: int = Field(default=1_000_000, ge=0)
    exact_limits: bool = False
    delete_on_ack: bool = False
    delete_policy: DeleteMode = DeleteMode.KEEP_REF

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------
    max_delivery: int = Field(default=0, ge=0)  # 0 = unlimited

    # ------------------------------------------------------------------
    # Ack
    # ------------------------------------------------------------------
    ack_explicit: bool = True
    ack_wait_ms: int = Field(default=30 * 60 * 1000, ge=0)
    nack_delay_ms: int = Field(default=0, ge=0)

    # ------------------------------------------------------------------
    # Idempotent production (Redis >= 8.6)
    # ------------------------------------------------------------------
    idmp_mode: IdmpMode = IdmpMode.NONE
    idmp_duration_sec: int = Field(default=0, ge=0)
    idmp_max_size: int = Field(default=0, ge=0)

    # ------------------------------------------------------------------
    # Other
    # ------------------------------------------------------------------
    max_expired_subjects: int = Field(default=0, ge=0)  # 0 = scan all

    @model_validator(mode="after")
    def _check_combinations(self) -> "StreamBusSettings":
        if not self.min_age_sec and not self.max_size:
            raise ValueError("min_age_sec and max_size can't both be 0")
        if self.nack_delay_ms > self.ack_wait_ms:
            raise ValueError("nack_delay_ms > ack_wait_ms")
        if self.delete_on_ack and not self.ack_explicit:
            raise ValueError("delete_on_ack requires ack_explicit")
        return self

    @property
    def trim_operator(self) -> str:
        return "=" if self.exact_limits else "~"


class StreamBusConfig(BaseSettings):
    """Process-level configuration for services built on streambus."""

    # ------------------------------------------------------------------
    # Redis
    # ------------------------------------------------------------------
    redis_url: str = "redis://localhost:6379"
    name: str = "default"

    # ------------------------------------------------------------------
    # Bus policy
    # ------------------------------------------------------------------
    bus: StreamBusSettings = Field(default_factory=StreamBusSettings)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    metrics_port: int = 8000
    log_level: str = "INFO"
    log_format: str = "json"  # json | text

    # ------------------------------------------------------------------
    # Pydantic-settings config
    # ------------------------------------------------------------------
    model_config = SettingsConfigDict(
        env_prefix="STREAMBUS_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )


@lru_cache(maxsize=1)
def get_config() -> StreamBusConfig:
    """Return a cached singleton of the process configuration.

    Call ``get_config.cache_clear()`` in tests to reset.
    """
    return StreamBusConfig()
