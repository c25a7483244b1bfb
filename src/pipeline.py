"""Telemetry pipeline: the single owned handle that call sites log through.

Emission fans each envelope out synchronously to the ring buffer, the
console side channel, the local cache, and (when gates allow) the batch
uploader. Nothing in here ever raises into the caller's control flow except
explicit query authorization failures.
"""

import asyncio
import logging
import os
import sys
import traceback
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import aiofiles
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from src.aggregation import (
    AggregateReport,
    AggregationEngine,
    empty_report,
    flatten_corpus,
    validate_window,
)
from src.config import PipelineConfig
from src.filters import apply_filters, build_filter_chain
from src.formatter import format_color, format_text, iso_timestamp, stdlib_level
from src.local_cache import CachedRecord, LocalCache
from src.metrics import PipelineMetrics
from src.models import SESSION_ID, Envelope, LogLevel, attribute, create_envelope, now_ms
from src.remote_store import AccessDenied, HttpRemoteStore, MemoryRemoteStore, RemoteStore
from src.ring_buffer import Listener, RingBuffer
from src.sweeper import RetentionSweeper, SweepResult
from src.uploader import BatchUploader

logger = logging.getLogger(__name__)
console = logging.getLogger("telemetry.console")

PERIODIC_SYNC_JOB = "periodic-sync"
INITIAL_SWEEP_JOB = "initial-sweep"
RECURRING_SWEEP_JOB = "recurring-sweep"


def build_store(config: PipelineConfig) -> RemoteStore:
    """HTTP store when a remote URL is configured, in-process store otherwise."""
    if config.remote_url:
        return HttpRemoteStore(config.remote_url, timeout=config.remote_timeout)
    return MemoryRemoteStore()


class TelemetryPipeline:
    """Owns the ring buffer, local cache, uploader, sweeper and schedules.

    Typical use::

        pipeline = TelemetryPipeline(config)
        await pipeline.start()
        pipeline.bind("user-42")
        pipeline.warn("Network", "Request timed out", {"url": "/items"})
        ...
        await pipeline.stop()
    """

    def __init__(
        self,
        config: Optional[PipelineConfig] = None,
        store: Optional[RemoteStore] = None,
        cache: Optional[LocalCache] = None,
        session_id: str = SESSION_ID,
        clock: Callable[[], int] = now_ms,
    ):
        self._config = config if config is not None else PipelineConfig()
        self._session_id = session_id
        self._clock = clock
        self._metrics = PipelineMetrics()

        self._owns_store = store is None
        self._store = store if store is not None else build_store(self._config)
        self._cache = cache if cache is not None else LocalCache(self._config.cache_path)
        self._buffer = RingBuffer(self._config.ring_buffer_size)
        self._uploader = BatchUploader(
            self._store,
            batch_size=self._config.batch_size,
            flush_interval=self._config.flush_interval,
            metrics=self._metrics,
        )
        self._sweeper = RetentionSweeper(
            self._cache,
            self._store,
            retention_days=self._config.retention_days,
            clock=clock,
            metrics=self._metrics,
        )
        self._aggregation = AggregationEngine(
            self._store,
            clock=clock,
            top_issues=self._config.top_issues,
            recent_errors=self._config.recent_errors,
        )

        self._actor_id: Optional[str] = None
        self._online = True
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._started = False

        self._hooks_installed = False
        self._prev_excepthook = None
        self._prev_loop_handler = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._loop = asyncio.get_running_loop()

        try:
            await asyncio.to_thread(self._cache.open)
        except Exception as exc:
            logger.warning("Local cache unavailable, continuing without it: %s", exc)

        self._uploader.start(self._loop)

        self._scheduler = AsyncIOScheduler(event_loop=self._loop, timezone="UTC")
        self._scheduler.add_job(
            self._periodic_sync,
            "interval",
            seconds=self._config.periodic_sync_interval,
            id=PERIODIC_SYNC_JOB,
            replace_existing=True,
        )
        self._scheduler.start()
        if self._actor_id is not None:
            self._schedule_sweeps()

        if self._config.capture_unhandled:
            self.install_error_hooks()

        self._started = True
        self.info("App", "Application started", {
            "session_id": self._session_id,
            "production": self._config.production,
            "online": self._online,
            "pid": os.getpid(),
        })

    async def stop(self) -> None:
        """Stop schedules, flush what is queued, and close owned resources."""
        if not self._started:
            return
        self._started = False
        self.uninstall_error_hooks()

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None

        await self._uploader.stop()
        logger.info(
            "Telemetry pipeline stopped: %d log(s) still pending", self._uploader.pending_count
        )

        if self._owns_store:
            await self._store.close()
        await asyncio.to_thread(self._cache.close)
        self._loop = None

    async def __aenter__(self) -> "TelemetryPipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def emit(self, level, category: str, message: str, data: Optional[dict] = None) -> Optional[Envelope]:
        """Build an envelope and fan it out. Never raises."""
        try:
            envelope = create_envelope(
                level,
                category,
                message,
                data,
                session_id=self._session_id,
                timestamp=self._clock(),
            )
        except Exception as exc:
            logger.warning("Dropping malformed log call (%r, %r): %s", level, category, exc)
            return None

        if self._actor_id is not None:
            envelope = attribute(envelope, self._actor_id)

        self._metrics.record_emit(envelope.level.value)
        self._buffer.append(envelope)
        self._write_console(envelope)
        self._write_local(envelope)
        self._forward_remote(envelope)
        return envelope

    def debug(self, category: str, message: str, data: Optional[dict] = None) -> Optional[Envelope]:
        return self.emit(LogLevel.DEBUG, category, message, data)

    def info(self, category: str, message: str, data: Optional[dict] = None) -> Optional[Envelope]:
        return self.emit(LogLevel.INFO, category, message, data)

    def warn(self, category: str, message: str, data: Optional[dict] = None) -> Optional[Envelope]:
        return self.emit(LogLevel.WARN, category, message, data)

    def error(self, category: str, message: str, data: Optional[dict] = None) -> Optional[Envelope]:
        return self.emit(LogLevel.ERROR, category, message, data)

    def _write_console(self, envelope: Envelope) -> None:
        try:
            render = format_color if self._config.console_color else format_text
            console.log(stdlib_level(envelope.level), render(envelope))
        except Exception:
            logger.debug("Console rendering failed", exc_info=True)

    def _write_local(self, envelope: Envelope) -> None:
        try:
            self._cache.append(envelope)
        except Exception as exc:
            self._metrics.record_local_failure()
            logger.warning("Failed to save log locally: %s", exc)

    def _forward_remote(self, envelope: Envelope) -> None:
        # No remote partition exists until an actor is bound
        if envelope.actor_id is None:
            return
        if self._config.production and envelope.level is LogLevel.DEBUG:
            return
        try:
            self._uploader.enqueue(envelope)
        except Exception as exc:
            logger.warning("Failed to queue log for upload: %s", exc)

    # ------------------------------------------------------------------
    # Actor binding and retention
    # ------------------------------------------------------------------

    def bind(self, actor_id: str) -> None:
        """Attribute subsequent envelopes to *actor_id* and schedule sweeps."""
        if not actor_id:
            logger.warning("Ignoring bind with empty actor id")
            return
        self._actor_id = actor_id
        self.info("Logger", "Actor bound", {"actor_id": actor_id, "session_id": self._session_id})
        self._schedule_sweeps()

    def unbind(self) -> None:
        """Stop attributing envelopes. Already queued items still go to their actor."""
        if self._actor_id is None:
            return
        self.info("Logger", "Actor unbound", {"actor_id": self._actor_id})
        self._actor_id = None
        self._remove_job(INITIAL_SWEEP_JOB)
        self._remove_job(RECURRING_SWEEP_JOB)
        self._uploader.request_flush("explicit")

    def _schedule_sweeps(self) -> None:
        if self._scheduler is None:
            return
        self._scheduler.add_job(
            self.sweep_now,
            "date",
            run_date=datetime.now(timezone.utc) + timedelta(seconds=self._config.sweep_delay),
            id=INITIAL_SWEEP_JOB,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.sweep_now,
            "interval",
            seconds=self._config.sweep_interval,
            id=RECURRING_SWEEP_JOB,
            replace_existing=True,
        )

    def _remove_job(self, job_id: str) -> None:
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            pass

    async def sweep_now(self) -> SweepResult:
        """Run the local sweep, and the remote one when an actor is bound."""
        result = await self._sweeper.sweep(self._actor_id)
        if result.sessions_deleted > 0:
            self.info("Logger", "Cleaned up old log sessions", {
                "deleted_sessions": result.sessions_deleted,
                "cutoff_date": iso_timestamp(result.cutoff),
            })
        return result

    # ------------------------------------------------------------------
    # Flushing and environment signals
    # ------------------------------------------------------------------

    async def flush_now(self) -> int:
        """Flush the upload queue and wait for the attempt to finish."""
        return await self._uploader.flush("explicit")

    def request_flush(self, trigger: str = "explicit") -> None:
        """Fire-and-forget flush for synchronous callers and signal handlers."""
        self._uploader.request_flush(trigger)

    async def _periodic_sync(self) -> None:
        if self._online and self._actor_id is not None:
            await self._uploader.flush("periodic")

    def set_online(self, online: bool) -> None:
        """Connectivity transition. Coming back online forces a flush."""
        was_online = self._online
        self._online = online
        if online:
            self.info("Network", "Connectivity online", {"online": True})
            if not was_online and self._scheduler is not None:
                self._scheduler.reschedule_job(
                    PERIODIC_SYNC_JOB,
                    trigger="interval",
                    seconds=self._config.periodic_sync_interval,
                )
            self._uploader.request_flush("reconnect")
        else:
            self.warn("Network", "Connectivity offline", {"online": False})

    def on_visibility_change(self, hidden: bool) -> None:
        self.info("App", "Visibility changed", {"hidden": hidden})
        if hidden:
            self._uploader.request_flush("background")

    def on_unload(self) -> None:
        self._uploader.request_flush("unload")

    # ------------------------------------------------------------------
    # Unhandled error capture
    # ------------------------------------------------------------------

    def install_error_hooks(self) -> None:
        """Turn uncaught exceptions into ``error`` envelopes in category Error."""
        if self._hooks_installed:
            return
        self._prev_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        if self._loop is not None:
            self._prev_loop_handler = self._loop.get_exception_handler()
            self._loop.set_exception_handler(self._loop_exception_handler)
        self._hooks_installed = True

    def uninstall_error_hooks(self) -> None:
        if not self._hooks_installed:
            return
        sys.excepthook = self._prev_excepthook
        if self._loop is not None:
            self._loop.set_exception_handler(self._prev_loop_handler)
        self._prev_excepthook = None
        self._prev_loop_handler = None
        self._hooks_installed = False

    def _excepthook(self, exc_type, exc, tb) -> None:
        self.error("Error", "Unhandled error", {
            "type": exc_type.__name__,
            "message": str(exc),
            "traceback": "".join(traceback.format_exception(exc_type, exc, tb)),
        })
        if self._prev_excepthook is not None:
            self._prev_excepthook(exc_type, exc, tb)

    def _loop_exception_handler(self, loop, context: dict) -> None:
        exc = context.get("exception")
        data = {"message": context.get("message", "")}
        if exc is not None:
            data["type"] = type(exc).__name__
            data["error"] = str(exc)
            data["traceback"] = "".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            )
        self.error("Error", "Unhandled async error", data)
        if self._prev_loop_handler is not None:
            self._prev_loop_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    # ------------------------------------------------------------------
    # Local views
    # ------------------------------------------------------------------

    def buffered_logs(
        self,
        level: Optional[str] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[Envelope]:
        """Ring buffer contents, oldest first, narrowed by the viewer filters."""
        return apply_filters(self._buffer.snapshot(), level=level, category=category, search=search)

    def clear_buffer(self) -> None:
        self._buffer.clear()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self._buffer.subscribe(listener)

    async def get_local_logs(
        self,
        limit: Optional[int] = None,
        level: Optional[str] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[CachedRecord]:
        """Newest-first local cache records. Filters apply after the limit."""
        limit = limit if limit is not None else self._config.local_query_limit
        try:
            records = await asyncio.to_thread(self._cache.get_recent, limit)
        except Exception as exc:
            logger.error("Failed to get local logs: %s", exc)
            return []
        predicate = build_filter_chain(level=level, category=category, search=search)
        return [r for r in records if predicate(r.envelope)]

    async def export_local(self, limit: Optional[int] = None) -> str:
        """Serialized document of local cache records, newest first."""
        try:
            return await asyncio.to_thread(self._cache.export_json, limit)
        except Exception as exc:
            logger.error("Failed to export local logs: %s", exc)
            return "[]"

    async def export_local_to_file(self, directory: str = ".") -> str:
        """Write the local export to ``telemetry-logs-{session}.json`` and return its path."""
        document = await self.export_local()
        path = os.path.join(directory, f"telemetry-logs-{self._session_id}.json")
        async with aiofiles.open(path, mode="w", encoding="utf-8") as f:
            await f.write(document)
        logger.info("Exported local logs to %s", path)
        return path

    async def import_local(self, document: str) -> int:
        """Re-ingest an export document into the local cache."""
        return await asyncio.to_thread(self._cache.import_json, document)

    # ------------------------------------------------------------------
    # Remote views
    # ------------------------------------------------------------------

    async def query_remote(
        self,
        actor_id: str,
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        level: Optional[str] = None,
        category: Optional[str] = None,
        search: Optional[str] = None,
    ) -> list[dict]:
        """All of *actor_id*'s remote records in range, newest first.

        Raises AccessDenied when the bound actor may not read that partition.
        """
        try:
            sessions = await self._store.read_partition(self._actor_id, actor_id)
        except AccessDenied:
            raise
        except Exception as exc:
            logger.error("Failed to get remote logs for %s: %s", actor_id, exc)
            return []
        records = flatten_corpus({actor_id: sessions}, start_time, end_time)
        return apply_filters(records, level=level, category=category, search=search)

    async def query_aggregate(self, window_days: int) -> AggregateReport:
        """Aggregate report over every partition for a preset window.

        Raises ValueError for a window outside the presets and AccessDenied
        when the bound actor lacks the all-logs read privilege.
        """
        validate_window(window_days)
        try:
            return await self._aggregation.run(self._actor_id, window_days)
        except AccessDenied:
            raise
        except Exception as exc:
            logger.error("Failed to aggregate remote logs: %s", exc)
            return empty_report(window_days, self._clock())

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def actor_id(self) -> Optional[str]:
        return self._actor_id

    @property
    def online(self) -> bool:
        return self._online

    @property
    def started(self) -> bool:
        return self._started

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def metrics(self) -> PipelineMetrics:
        return self._metrics

    @property
    def uploader(self) -> BatchUploader:
        return self._uploader

    @property
    def scheduler(self) -> Optional[AsyncIOScheduler]:
        return self._scheduler
