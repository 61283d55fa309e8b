"""
Stale-Batch Reaper

Fails batches stuck in processing, together with any job still processing
for them. Runs on its own timer, independent of the worker.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, update, and_

from batchex.config.batchex_config import BatchExConfig
from batchex.db.connection import Database
from batchex.db.models import Batch, utcnow
from batchex.jobs.queue import JobQueue

logger = logging.getLogger(__name__)


class StaleBatchReaper:
    """Periodic backstop for batches whose worker died or hung"""

    def __init__(
        self,
        db: Database,
        queue: JobQueue,
        config: Optional[BatchExConfig] = None,
        interval_seconds: Optional[float] = None,
        timeout_minutes: Optional[float] = None
    ):
        self.db = db
        self.queue = queue
        config = config or db.config
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else config.get('reaper.interval_seconds', 60)
        )
        self.timeout_minutes = float(
            timeout_minutes if timeout_minutes is not None else config.get('reaper.timeout_minutes', 20)
        )
        self._shutdown_event = asyncio.Event()
        self._reaped_count = 0

    def reap_once(self) -> int:
        """
        Fail every batch processing longer than the timeout

        Returns:
            Number of batches reaped
        """
        cutoff = utcnow() - timedelta(minutes=self.timeout_minutes)
        error = f"Processing timed out after {self.timeout_minutes:g} minutes"

        with self.db.transaction() as session:
            stale_ids = session.execute(
                select(Batch.id).where(and_(
                    Batch.status == 'processing',
                    Batch.updated_at < cutoff
                ))
            ).scalars().all()
            if not stale_ids:
                return 0

            # Guarded on status so a batch is reaped exactly once
            session.execute(
                update(Batch)
                .where(and_(Batch.id.in_(list(stale_ids)), Batch.status == 'processing'))
                .values(status='failed', error_message=error, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            jobs_failed = self.queue.fail_processing_for_batches(session, stale_ids, error)

        self._reaped_count += len(stale_ids)
        logger.warning(f"Reaped {len(stale_ids)} stale batches and failed {jobs_failed} jobs")
        return len(stale_ids)

    async def run(self) -> None:
        """Reap on every interval until stopped"""
        logger.info(
            f"Starting stale batch reaper (every {self.interval_seconds:g}s, "
            f"timeout {self.timeout_minutes:g} min)"
        )
        while not self._shutdown_event.is_set():
            try:
                self.reap_once()
            except Exception as e:
                logger.exception(f"Reaper tick failed: {e}")

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

        logger.info(f"Reaper stopped. Reaped: {self._reaped_count}")

    async def stop(self) -> None:
        self._shutdown_event.set()
