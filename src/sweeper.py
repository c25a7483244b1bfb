"""Retention sweeper: purges local and remote records past the horizon."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from src.local_cache import LocalCache
from src.metrics import PipelineMetrics
from src.models import DAY_MS, now_ms
from src.remote_store import RemoteStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SweepResult:
    cutoff: int
    sessions_deleted: int = 0
    local_deleted: int = 0
    remote_failed: bool = False
    local_failed: bool = False


class RetentionSweeper:
    """Enforces the retention horizon on both stores.

    Remote: a session group is deleted whole when its oldest record is
    strictly older than the cutoff; younger sessions are kept in full.
    Local: every record strictly older than the cutoff is deleted.
    """

    def __init__(
        self,
        cache: LocalCache,
        store: RemoteStore,
        retention_days: int = 30,
        clock: Callable[[], int] = now_ms,
        metrics: Optional[PipelineMetrics] = None,
    ):
        self._cache = cache
        self._store = store
        self._retention_ms = retention_days * DAY_MS
        self._clock = clock
        self._metrics = metrics if metrics is not None else PipelineMetrics()

    def cutoff(self) -> int:
        return self._clock() - self._retention_ms

    async def sweep_remote(self, actor_id: str, cutoff: Optional[int] = None) -> int:
        """Delete expired session groups in *actor_id*'s partition.

        Raises whatever the store raises; sessions deleted before the failure
        stay deleted.
        """
        cutoff = self.cutoff() if cutoff is None else cutoff
        sessions = await self._store.read_partition(actor_id, actor_id)
        deleted = 0

        for session_id, records in sessions.items():
            if not records:
                continue
            oldest = min(int(r["timestamp"]) for r in records.values())
            if oldest < cutoff:
                await self._store.remove_session(actor_id, actor_id, session_id)
                deleted += 1

        if deleted:
            logger.info(
                "Removed %d expired session(s) for %s (cutoff=%d)", deleted, actor_id, cutoff
            )
        return deleted

    async def sweep_local(self, cutoff: Optional[int] = None) -> int:
        cutoff = self.cutoff() if cutoff is None else cutoff
        return await asyncio.to_thread(self._cache.delete_older_than, cutoff)

    async def sweep(self, actor_id: Optional[str]) -> SweepResult:
        """Run both sweeps. Failures are logged, never raised."""
        cutoff = self.cutoff()
        sessions_deleted = 0
        local_deleted = 0
        remote_failed = False
        local_failed = False

        if actor_id:
            try:
                sessions_deleted = await self.sweep_remote(actor_id, cutoff)
            except Exception as exc:
                remote_failed = True
                logger.error("Failed to clean up remote logs for %s: %s", actor_id, exc)

        try:
            local_deleted = await self.sweep_local(cutoff)
        except Exception as exc:
            local_failed = True
            logger.error("Failed to clear old local logs: %s", exc)

        self._metrics.record_sweep(
            sessions_deleted, local_deleted, failed=remote_failed or local_failed
        )
        return SweepResult(
            cutoff=cutoff,
            sessions_deleted=sessions_deleted,
            local_deleted=local_deleted,
            remote_failed=remote_failed,
            local_failed=local_failed,
        )
