"""StreamBus -- Small shared helpers."""

from streambus.utils.idempotency import make_idempotent_id, payload_idempotent_id

__all__: list[str] = [
    "make_idempotent_id",
    "payload_idempotent_id",
]
