"""Client entry point: runs the telemetry pipeline and emits sample events."""

import asyncio
import logging
import random
import signal
import sys

from src.aggregation import export_report
from src.config import load_client_config
from src.partition_store import AccessDenied, PartitionStore
from src.pipeline import TelemetryPipeline
from src.remote_store import MemoryRemoteStore

SAMPLE_EVENTS = [
    ("debug", "App", "Render cycle completed"),
    ("info", "App", "Item added to list"),
    ("info", "Sync", "Snapshot received"),
    ("info", "Auth", "Session refreshed"),
    ("warn", "Network", "Request retry scheduled"),
    ("warn", "Sync", "Write deferred while offline"),
    ("error", "Auth", "Token refresh failed"),
    ("error", "Network", "Connection timeout to upstream"),
]


async def run(config, args) -> int:
    logger = logging.getLogger(__name__)

    store = None
    if not config.remote_url:
        # In-process store; the demo actor may read every partition
        admins = (args.actor,) if args.actor else ()
        store = MemoryRemoteStore(PartitionStore(admin_actors=admins))

    pipeline = TelemetryPipeline(config, store=store)
    shutdown = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, shutdown.set)

    await pipeline.start()
    try:
        if args.actor:
            pipeline.bind(args.actor)

        for _ in range(args.events):
            if shutdown.is_set():
                logger.info("Shutdown requested, stopping emission")
                break
            level, category, message = random.choice(SAMPLE_EVENTS)
            pipeline.emit(level, category, message, {"sample": True})
            await asyncio.sleep(0.05)

        await pipeline.flush_now()

        if args.export:
            path = await pipeline.export_local_to_file(args.export)
            print(f"Local logs exported to {path}")

        if args.analyze is not None:
            try:
                report = await pipeline.query_aggregate(args.analyze)
            except (AccessDenied, ValueError) as exc:
                print(f"Cannot analyze: {exc}", file=sys.stderr)
                return 1
            print(export_report(report))

        logger.info("Pipeline metrics: %s", pipeline.metrics.snapshot())
    finally:
        await pipeline.stop()
    return 0


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    config, args = load_client_config()
    sys.exit(asyncio.run(run(config, args)))


if __name__ == "__main__":
    main()
