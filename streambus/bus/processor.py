"""
StreamBus -- Processing loop.

Maps per-subject handlers over consumer read batches and settles every
message with ack or nack:

    - handler returns truthy  -> ack (when ack mode is on)
    - handler returns falsy   -> nack (when nack mode is on), otherwise
                                 :class:`ProcessorError`
    - handler or ack raises   -> nack (when nack mode is on), then the
                                 exception propagates

Tombstoned entries (payload ``None``) go to the optional empty handler,
falling back to the subject's handler.

:meth:`StreamBusProcessor.process` runs a bounded number of iterations
and is what tests and cron-style jobs use.  :meth:`start` / :meth:`stop`
wrap it in a background task with exponential error backoff for
long-running services.

Contract:
    Delivery is at-least-once.  Handlers MUST be idempotent.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Union

from streambus.bus.consumer import StreamBusConsumerProtocol
from streambus.bus.exceptions import (
    ProcessorError,
    StreamBusConsistencyError,
    UnknownSubjectError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

class MessageHandler(Protocol):
    """Handles one message of one subject; returns True on success."""

    async def handle(self, subject: str, entry_id: str, payload: Any) -> bool:
        ...


HandlerFunc = Callable[[str, str, Any], Union[bool, Awaitable[bool]]]


class FunctionHandler:
    """Adapts a plain or async function ``(subject, id, payload)`` to
    :class:`MessageHandler`."""

    def __init__(self, func: HandlerFunc) -> None:
        self._func: HandlerFunc = func

    async def handle(self, subject: str, entry_id: str, payload: Any) -> bool:
        result = self._func(subject, entry_id, payload)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)


def as_handler(handler: Union[MessageHandler, HandlerFunc]) -> MessageHandler:
    if hasattr(handler, "handle"):
        return handler  # type: ignore[return-value]
    return FunctionHandler(handler)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class StreamBusProcessor:
    """Dispatch loop over a consumer.

    Args:
        consumer: Any consumer (plain or ordered-strict).
        handlers: Subject name -> handler (object or function).
        batch: ``count`` passed to every read.
        block_ms: Blocking timeout for the new-entries phase.
        ack: Ack successfully handled messages.
        nack: Nack failed messages; when False a failure raises
            :class:`ProcessorError`.
        empty_handler: Handler for tombstoned (``None``) payloads.
        interrupt: Zero-arg predicate checked before each iteration;
            returning True ends :meth:`process` early.
        idle_sleep: Seconds the background loop sleeps after an empty
            iteration (non-blocking reads would otherwise spin).
    """

    def __init__(
        self,
        consumer: StreamBusConsumerProtocol,
        handlers: Optional[Mapping[str, Union[MessageHandler, HandlerFunc]]] = None,
        batch: int = 1,
        block_ms: Optional[int] = None,
        ack: bool = True,
        nack: bool = True,
        empty_handler: Optional[Union[MessageHandler, HandlerFunc]] = None,
        interrupt: Optional[Callable[[], bool]] = None,
        idle_sleep: float = 0.1,
    ) -> None:
        self._consumer: StreamBusConsumerProtocol = consumer
        self._handlers: dict[str, MessageHandler] = {
            subject: as_handler(handler) for subject, handler in (handlers or {}).items()
        }
        self._batch: int = batch
        self._block_ms: Optional[int] = block_ms
        self._ack: bool = ack
        self._nack: bool = nack
        self._empty_handler: Optional[MessageHandler] = (
            as_handler(empty_handler) if empty_handler is not None else None
        )
        self._interrupt: Optional[Callable[[], bool]] = interrupt
        self._idle_sleep: float = idle_sleep

        self._running: bool = False
        self._task: Optional[asyncio.Task[None]] = None

        self.stats: dict[str, int] = {
            "processed": 0,
            "succeeded": 0,
            "failed": 0,
            "errors": 0,
        }

    def set_handler(self, subject: str, handler: Union[MessageHandler, HandlerFunc]) -> "StreamBusProcessor":
        self._handlers[subject] = as_handler(handler)
        return self

    @property
    def running(self) -> bool:
        return self._running

    # -- bounded run ---------------------------------------------------------

    async def process(self, iterations: int) -> int:
        """Run up to *iterations* read/dispatch rounds.

        Returns:
            Number of messages handed to a handler.

        Raises:
            UnknownSubjectError: A message arrived for a subject with no
                handler.
            ProcessorError: A handler failed while nack mode is off.
            Exception: Whatever a handler raised (after the nack).
        """
        processed: int = 0
        logger.debug("Processing up to %d iterations", iterations)

        for _ in range(iterations):
            if self._interrupt is not None and self._interrupt():
                logger.info("Processor interrupted")
                break

            batch = await self._consumer.read(self._batch, self._block_ms)
            if not batch:
                continue

            for subject, messages in batch.items():
                handler = self._handlers.get(subject)
                if handler is None:
                    raise UnknownSubjectError(subject)

                succeeded: int = 0
                failed: int = 0
                for entry_id, payload in messages.items():
                    processed += 1
                    if await self._dispatch(handler, subject, entry_id, payload):
                        succeeded += 1
                    else:
                        failed += 1

                logger.info(
                    "Handled %s: count=%d success=%d fail=%d",
                    subject,
                    len(messages),
                    succeeded,
                    failed,
                )

        return processed

    async def _dispatch(
        self, handler: MessageHandler, subject: str, entry_id: str, payload: Any
    ) -> bool:
        self.stats["processed"] += 1
        try:
            if payload is None:
                logger.warning("Empty payload: subject=%s id=%s", subject, entry_id)
                result: bool = await (self._empty_handler or handler).handle(
                    subject, entry_id, payload
                )
            else:
                result = await handler.handle(subject, entry_id, payload)

            if result:
                self.stats["succeeded"] += 1
                if self._ack:
                    await self._consumer.ack(subject, entry_id)
                return True

            self.stats["failed"] += 1
            if not self._nack:
                raise ProcessorError(f"message not processed {subject}, id: {entry_id}")
            await self._consumer.nack(subject, entry_id)
            logger.debug("Nacked %s id=%s", subject, entry_id)
            return False
        except ProcessorError:
            raise
        except Exception as exc:
            self.stats["errors"] += 1
            logger.error(
                "Handler exception: subject=%s id=%s: %s", subject, entry_id, exc
            )
            if self._nack:
                await self._consumer.nack(subject, entry_id)
            raise

    # -- background loop -----------------------------------------------------

    async def start(self) -> None:
        """Run :meth:`process` in a background task until :meth:`stop`."""
        if self._running:
            logger.warning("StreamBusProcessor already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="streambus-processor")
        logger.info("StreamBusProcessor started (handlers=%s)", sorted(self._handlers))

    async def stop(self) -> None:
        if not self._running and self._task is None:
            return
        self._running = False

        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None

        logger.info("StreamBusProcessor stopped: stats=%s", self.stats)

    async def _loop(self) -> None:
        consecutive_errors: int = 0
        error_backoff_base: float = 1.0

        while self._running:
            try:
                if not await self.process(1):
                    await asyncio.sleep(self._idle_sleep)
                consecutive_errors = 0
            except asyncio.CancelledError:
                logger.debug("Processor loop cancelled")
                break
            except StreamBusConsistencyError as exc:
                logger.critical("Processor stopping on consistency error: %s", exc)
                self._running = False
                break
            except Exception as exc:
                consecutive_errors += 1
                backoff: float = min(
                    error_backoff_base * (2 ** (consecutive_errors - 1)),
                    30.0,
                )
                logger.error(
                    "Processor loop error #%d: %s (backing off %.1fs)",
                    consecutive_errors,
                    exc,
                    backoff,
                )
                await asyncio.sleep(backoff)
