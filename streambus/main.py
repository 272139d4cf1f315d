"""StreamBus - Operator CLI.

Small tool for looking at a running bus from the outside:

    streambus subjects                      list subjects with a stream
    streambus groups SUBJECT                consumer groups of a subject
    streambus lag GROUP [--interval N]      pending / lag per subject,
                                            optionally exported to Prometheus
    streambus publish SUBJECT JSON          append one JSON payload
    streambus dlq stats|inspect|replay|purge

Connection and bus policy come from ``STREAMBUS_*`` environment variables
(see :class:`streambus.config.settings.StreamBusConfig`); ``--name`` and
``--redis-url`` override them.
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Any, Optional

from streambus import __version__
from streambus.bus.dlq import DeadLetterQueue
from streambus.bus.info import StreamBusInfo
from streambus.bus.serializer import StreamBusJsonSerializer
from streambus.bus.store import RedisStreamStore
from streambus.bus.stream_bus import StreamBus
from streambus.bus.builder import DLQ_PREFIX
from streambus.config.settings import StreamBusConfig, get_config
from streambus.observability.log_setup import setup_logging
from streambus.observability.metrics import get_metrics
from streambus.utils.idempotency import payload_idempotent_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _print(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_subjects(store: RedisStreamStore, config: StreamBusConfig, args) -> int:
    info = StreamBusInfo(store, config.name)
    _print(await info.subjects())
    return 0


async def cmd_groups(store: RedisStreamStore, config: StreamBusConfig, args) -> int:
    info = StreamBusInfo(store, config.name)
    _print(await info.groups(args.subject))
    return 0


async def collect_lag(info: StreamBusInfo, group: str, subjects: list[str]) -> dict[str, dict[str, int]]:
    """Pending, time lag and entry lag of *group* per subject; updates gauges."""
    metrics = get_metrics()
    report: dict[str, dict[str, int]] = {}
    for subject in subjects:
        pending: int = await info.group_pending(group, subject)
        time_lag: int = await info.group_time_lag(group, subject)
        report[subject] = {
            "pending": pending,
            "time_lag_ms": time_lag,
            "lag": await info.group_lag(group, subject),
            "length": await info.stream_length(subject),
        }
        metrics.group_pending.labels(info.name, subject, group).set(pending)
        metrics.group_time_lag.labels(info.name, subject, group).set(time_lag)
    return report


async def cmd_lag(store: RedisStreamStore, config: StreamBusConfig, args) -> int:
    info = StreamBusInfo(store, config.name)
    subjects: list[str] = [args.subject] if args.subject else await info.subjects()

    if not args.interval:
        _print(await collect_lag(info, args.group, subjects))
        return 0

    metrics = get_metrics(config.metrics_port)
    metrics.set_build_info(__version__, config.name)
    metrics.start_server()

    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    logger.info(
        "Exporting lag for group '%s' on '%s' every %ss", args.group, config.name, args.interval
    )
    while not shutdown.is_set():
        report = await collect_lag(info, args.group, subjects or await info.subjects())
        logger.info("Lag: %s", report)
        try:
            await asyncio.wait_for(shutdown.wait(), timeout=args.interval)
        except asyncio.TimeoutError:
            pass
    return 0


async def cmd_publish(store: RedisStreamStore, config: StreamBusConfig, args) -> int:
    bus = StreamBus(config.name, store, config.bus, {args.subject: StreamBusJsonSerializer()})
    try:
        payload: Any = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        logger.error("Payload is not valid JSON: %s", exc)
        return 2

    idempotent_id: Optional[str] = args.idempotent_id
    if idempotent_id is None and args.derive_idempotent_id:
        idempotent_id = payload_idempotent_id(payload)

    entry_id: str = await bus.add(args.subject, payload, args.producer_id, idempotent_id)
    _print({"subject": args.subject, "id": entry_id})
    return 0


async def cmd_dlq(store: RedisStreamStore, config: StreamBusConfig, args) -> int:
    dlq_name: str = DLQ_PREFIX + config.name
    subjects: list[str] = (
        [args.subject] if getattr(args, "subject", None)
        else await StreamBusInfo(store, dlq_name).subjects()
    )
    if not subjects:
        _print({})
        return 0

    serializers = {subject: StreamBusJsonSerializer() for subject in subjects}
    dlq = DeadLetterQueue(
        StreamBus(dlq_name, store, config.bus, serializers),
        StreamBus(config.name, store, config.bus, serializers),
    )

    if args.action == "stats":
        _print(await dlq.stats())
    elif args.action == "inspect":
        _print(await dlq.inspect(args.subject, args.count))
    elif args.action == "replay":
        replayed: bool = await dlq.replay(args.subject, args.dlq_id)
        _print({"replayed": replayed})
        return 0 if replayed else 1
    elif args.action == "purge":
        _print({"purged": await dlq.purge(args.subject)})
    return 0


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streambus", description="Inspect and operate a stream bus.")
    parser.add_argument("--name", help="bus name (default: STREAMBUS_NAME)")
    parser.add_argument("--redis-url", help="Redis URL (default: STREAMBUS_REDIS_URL)")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("subjects", help="list subjects").set_defaults(handler=cmd_subjects)

    groups = commands.add_parser("groups", help="list consumer groups of a subject")
    groups.add_argument("subject")
    groups.set_defaults(handler=cmd_groups)

    lag = commands.add_parser("lag", help="group pending / lag per subject")
    lag.add_argument("group")
    lag.add_argument("--subject")
    lag.add_argument("--interval", type=float, default=0, help="repeat every N seconds and serve metrics")
    lag.set_defaults(handler=cmd_lag)

    publish = commands.add_parser("publish", help="append one JSON payload")
    publish.add_argument("subject")
    publish.add_argument("payload")
    publish.add_argument("--producer-id", default="")
    publish.add_argument("--idempotent-id")
    publish.add_argument(
        "--derive-idempotent-id",
        action="store_true",
        help="use a hash of the payload as idempotent id",
    )
    publish.set_defaults(handler=cmd_publish)

    dlq = commands.add_parser("dlq", help="dead-letter queue operations")
    actions = dlq.add_subparsers(dest="action", required=True)
    actions.add_parser("stats")
    inspect = actions.add_parser("inspect")
    inspect.add_argument("subject")
    inspect.add_argument("--count", type=int, default=10)
    replay = actions.add_parser("replay")
    replay.add_argument("subject")
    replay.add_argument("dlq_id")
    purge = actions.add_parser("purge")
    purge.add_argument("subject")
    dlq.set_defaults(handler=cmd_dlq)

    return parser


async def run(args: argparse.Namespace) -> int:
    config: StreamBusConfig = get_config()
    overrides: dict[str, Any] = {}
    if args.name:
        overrides["name"] = args.name
    if args.redis_url:
        overrides["redis_url"] = args.redis_url
    if overrides:
        config = config.model_copy(update=overrides)

    store = RedisStreamStore(config.redis_url)
    await store.connect()
    try:
        return await args.handler(store, config, args)
    finally:
        await store.disconnect()


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = get_config()
    setup_logging(config.log_level, config.log_format)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
