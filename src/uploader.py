"""Remote batch uploader: queues attributed envelopes and flushes them in batches.

Flush triggers: the queue reaching ``batch_size``, an idle timer re-armed on
every enqueue, an explicit request, and a periodic tick driven by the
pipeline's scheduler. A failed flush pushes the unsent remainder back to the
front of the queue so nothing is dropped.
"""

import asyncio
import collections
import logging
from typing import Optional

from src.metrics import PipelineMetrics
from src.models import Envelope, envelope_to_dict
from src.remote_store import RemoteStore

logger = logging.getLogger(__name__)


class BatchUploader:
    """Single-loop uploader that owns the pending queue exclusively.

    Flushes are serialized by an ``asyncio.Lock``. Each flush snapshots and
    clears the queue without yielding, so an enqueue can never land between
    the snapshot and the clear. Items are written sequentially in enqueue
    order, each to the partition of the actor it was attributed to.
    """

    def __init__(
        self,
        store: RemoteStore,
        batch_size: int = 10,
        flush_interval: float = 5.0,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self._store = store
        self._batch_size = batch_size
        self._flush_interval = flush_interval
        self._metrics = metrics if metrics is not None else PipelineMetrics()

        self._pending: collections.deque[Envelope] = collections.deque()
        self._flush_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._last_flush_failed = False
        self._flush_requested: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Attach to the running loop so triggers can schedule flushes."""
        self._loop = loop or asyncio.get_running_loop()
        if self._pending:
            self._arm_timer()

    async def stop(self) -> None:
        """Cancel the idle timer, wait for an in-flight flush, then flush the rest."""
        self._cancel_timer()
        # A finished flush may chain another one from its done callback
        while self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        self._flush_requested = None
        await self.flush("stop")
        self._loop = None

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(self, envelope: Envelope) -> None:
        """Queue an attributed envelope. Never blocks and never raises."""
        if envelope.actor_id is None:
            logger.warning("Dropping unattributed envelope %r", envelope.message)
            return
        self._pending.append(envelope)
        self._metrics.record_enqueue()

        if len(self._pending) >= self._batch_size:
            self.request_flush("size")
        else:
            self._arm_timer()

    def request_flush(self, trigger: str = "explicit") -> Optional[asyncio.Task]:
        """Schedule a flush without waiting for it.

        At most one scheduled flush is outstanding. A request made while one
        is in flight returns that task and is remembered, so another flush
        runs as soon as it finishes over whatever was enqueued meanwhile.
        """
        if self._loop is None or self._loop.is_closed():
            return None
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_requested = trigger
            return self._flush_task
        task = self._loop.create_task(self.flush(trigger))
        task.add_done_callback(self._on_flush_done)
        self._flush_task = task
        return task

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self, trigger: str = "explicit") -> int:
        """Write every pending item to the remote store. Returns items written."""
        async with self._flush_lock:
            self._cancel_timer()
            if not self._pending:
                return 0

            batch = list(self._pending)
            self._pending.clear()
            written = 0

            try:
                for envelope in batch:
                    await self._store.push(
                        envelope.actor_id,
                        envelope.actor_id,
                        envelope.session_id,
                        envelope_to_dict(envelope),
                    )
                    written += 1
            except asyncio.CancelledError:
                self._requeue(batch[written:])
                raise
            except Exception as exc:
                remainder = batch[written:]
                self._requeue(remainder)
                self._last_flush_failed = True
                self._metrics.record_flush(written, len(remainder), trigger)
                logger.warning(
                    "Failed to flush log batch (%s): %d/%d written, %d requeued: %s",
                    trigger,
                    written,
                    len(batch),
                    len(remainder),
                    exc,
                )
                return written

            self._last_flush_failed = False
            self._metrics.record_flush(written, 0, trigger)
            logger.debug("Flushed %d log(s) to remote store (%s)", written, trigger)
            return written

    def _requeue(self, items: list[Envelope]) -> None:
        """Put *items* back at the front of the queue, keeping their order."""
        self._pending.extendleft(reversed(items))

    def _on_flush_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Flush task crashed: %s", exc)
            return
        requested = self._flush_requested
        self._flush_requested = None
        if not self._pending:
            return
        if requested is not None:
            self.request_flush(requested)
        # Items that filled a batch while the flush was in flight
        elif not self._last_flush_failed and len(self._pending) >= self._batch_size:
            self.request_flush("size")

    # ------------------------------------------------------------------
    # Idle timer
    # ------------------------------------------------------------------

    def _arm_timer(self) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        self._cancel_timer()
        self._timer = self._loop.call_later(
            self._flush_interval, self.request_flush, "timer"
        )

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    # ------------------------------------------------------------------
    # Introspection and dynamic config
    # ------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def pending(self) -> tuple[Envelope, ...]:
        """Snapshot of the queue, front first."""
        return tuple(self._pending)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    @property
    def batch_size(self) -> int:
        return self._batch_size

    @batch_size.setter
    def batch_size(self, value: int) -> None:
        self._batch_size = value
        if self._pending and len(self._pending) >= value:
            self.request_flush("size")

    @property
    def flush_interval(self) -> float:
        return self._flush_interval

    @flush_interval.setter
    def flush_interval(self, value: float) -> None:
        self._flush_interval = value
