"""
StreamBus -- Exception hierarchy.

Four families, all rooted at :class:`StreamBusError`:

    configuration  -- bad settings / subjects / builder wiring.  Raised at
                      construction time and never worth retrying.
    usage          -- a single call was invalid (unknown subject, ack mode
                      disabled, ...).  The caller decides what to do.
    consistency    -- the ordered-strict consumer detected a second
                      consumer or a pending-count mismatch.  Stop and alert.
    feature        -- the Redis server is too old for a requested option.

Transient Redis errors (``redis.exceptions.ConnectionError`` and friends)
are never wrapped; they propagate unchanged.
"""

from __future__ import annotations


class StreamBusError(Exception):
    """Base class for every error raised by streambus."""


# --------------------------------------------------------------------------- #
# Configuration
# --------------------------------------------------------------------------- #


class StreamBusConfigError(StreamBusError, ValueError):
    """Invalid subject name, empty serializer set or incomplete builder."""


# --------------------------------------------------------------------------- #
# Usage
# --------------------------------------------------------------------------- #


class UnknownSubjectError(StreamBusError):
    """The subject is not registered on this bus (or has no handler)."""

    def __init__(self, subject: str) -> None:
        self.subject = subject
        super().__init__(f"unknown message subject {subject!r}")


class AckModeDisabledError(StreamBusError):
    """ack / nack called on a bus configured for implicit acks."""


class NackDelayExceedsWaitError(StreamBusError):
    """Requested nack delay is larger than the ack-wait window."""

    def __init__(self, nack_delay_ms: int, ack_wait_ms: int) -> None:
        self.nack_delay_ms = nack_delay_ms
        self.ack_wait_ms = ack_wait_ms
        super().__init__(
            f"nack delay {nack_delay_ms}ms exceeds ack wait {ack_wait_ms}ms"
        )


class EmptyGroupNameError(StreamBusError):
    """Consumer group name must not be empty."""


class MissingProducerIdError(StreamBusError):
    """AUTO / EXPLICIT idempotency requires a producer id."""


class MissingIdempotentIdError(StreamBusError):
    """EXPLICIT idempotency requires a per-message idempotent id."""


class GroupCreationError(StreamBusError):
    """The consumer group could not be created on every subject."""


class NotAllowedError(StreamBusError):
    """Operation is not permitted for this consumer type."""


class ProcessorError(StreamBusError):
    """A handler reported failure and nack is disabled."""


class CodecError(StreamBusError):
    """Payload could not be serialized or deserialized."""


# --------------------------------------------------------------------------- #
# Consistency
# --------------------------------------------------------------------------- #


class StreamBusConsistencyError(StreamBusError):
    """Base for errors that signal a broken ordered-strict contract."""


class InconsistencyDetectedError(StreamBusConsistencyError):
    """Locally tracked pending count does not match Redis."""

    def __init__(self, subject: str, calculated: int, actual: int) -> None:
        self.subject = subject
        self.calculated = calculated
        self.actual = actual
        super().__init__(
            f"inconsistency detected on {subject!r}: calculated pending "
            f"{calculated} != real pending {actual}"
        )


class MultipleConsumersDetectedError(InconsistencyDetectedError):
    """More than one consumer is attached to an ordered-strict group."""

    def __init__(self, subject: str, consumers: int) -> None:
        self.consumers = consumers
        StreamBusConsistencyError.__init__(
            self,
            f"only one consumer allowed on {subject!r}, detected {consumers}",
        )
        self.subject = subject
        self.calculated = 1
        self.actual = consumers


class ForeignConsumerDetectedError(StreamBusConsistencyError):
    """The single consumer attached to the group has a different name."""

    def __init__(self, subject: str, name: str) -> None:
        self.subject = subject
        self.name = name
        super().__init__(f"unknown consumer detected on {subject!r}: {name}")


# --------------------------------------------------------------------------- #
# Feature support
# --------------------------------------------------------------------------- #


class UnsupportedFeatureError(StreamBusError):
    """The connected Redis server does not support a requested option."""

    def __init__(self, feature: str, required: str) -> None:
        self.feature = feature
        self.required = required
        super().__init__(
            f"Redis server does not support {feature} (requires {required}+)"
        )
