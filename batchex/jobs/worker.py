"""
Async Job Worker

Selects admissible jobs from the queue and executes them.
Supports:
- Priority ordering with per-instance and per-project concurrency limits
- Per-project rate limiting and daily endpoint quotas
- Retries with exponential backoff
- Wake-up on enqueue and recovery after a crash
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from batchex.config.batchex_config import BatchExConfig
from batchex.db.connection import Database
from batchex.db.models import QueueJob
from batchex.exceptions import (
    JobExecutionError, JobCanceledError, TransientJobError, PermanentJobError, NotFoundError
)
from batchex.jobs.handlers import JobContext, ModelCaller, BatchHandlers
from batchex.jobs.metrics import MetricsRecorder, STATUS_SUCCESS, STATUS_FAILED
from batchex.jobs.queue import JobQueue, JobStatus, JobType
from batchex.jobs.rate_limiter import ProjectRateLimiter
from batchex.jobs.reaper import StaleBatchReaper
from batchex.jobs.redo import RedoScheduler
from batchex.services.batch_service import BatchService, CANCELED_MESSAGE
from batchex.services.quota_service import QuotaLedger, managed_endpoint_id
from batchex.storage.filesystem_storage import FileSystemStorage

logger = logging.getLogger(__name__)

Handler = Callable[[QueueJob, JobContext], Awaitable[None]]


@dataclass
class WorkerConfig:
    """Worker configuration"""
    # Polling
    poll_interval: float = 2.0  # seconds
    candidate_batch_size: int = 50

    # Instance-wide in-flight cap
    max_parallel_requests: int = 10

    # Timeouts
    job_timeout: float = 900.0  # seconds
    shutdown_timeout: float = 30.0

    @classmethod
    def from_config(cls, config: BatchExConfig) -> 'WorkerConfig':
        return cls(
            poll_interval=float(config.get('queue.poll_interval', 2.0)),
            candidate_batch_size=int(config.get('queue.candidate_batch_size', 50)),
            max_parallel_requests=int(config.get('instance.max_parallel_requests', 10)),
            job_timeout=float(config.get('queue.job_timeout', 900.0)),
            shutdown_timeout=float(config.get('queue.shutdown_timeout', 30.0))
        )


class Worker:
    """
    Async job worker for batch extraction.

    One worker runs per instance. Each loop iteration walks the claimable
    jobs in priority order, claims every job that passes admission and runs
    it as a task, then sleeps until the next poll or a wake-up.

    Usage:
        worker = Worker(db, storage=storage)
        queue.on_enqueue = worker.notify

        await worker.run()
    """

    def __init__(
        self,
        db: Database,
        config: Optional[WorkerConfig] = None,
        queue: Optional[JobQueue] = None,
        batches: Optional[BatchService] = None,
        quota: Optional[QuotaLedger] = None,
        metrics: Optional[MetricsRecorder] = None,
        storage: Optional[FileSystemStorage] = None,
        rate_limiter: Optional[ProjectRateLimiter] = None,
        client_factory: Optional[Callable[..., Any]] = None
    ):
        self.db = db
        self.config = config or WorkerConfig.from_config(db.config)
        self.queue = queue or JobQueue(db)
        self.storage = storage or FileSystemStorage(db.config.get('storage', {}))
        self.batches = batches or BatchService(db, self.storage, self.queue)
        self.quota = quota or QuotaLedger(db)
        self.metrics = metrics or MetricsRecorder(db)
        self.rate_limiter = rate_limiter or ProjectRateLimiter()

        caller = ModelCaller(self.quota, self.rate_limiter, db.config, client_factory)
        batch_handlers = BatchHandlers(db, self.queue, self.batches, self.storage, caller)
        self.redo = RedoScheduler(db, self.queue, self.batches, self.storage, caller)

        # Handlers for different job types
        self._handlers: Dict[str, Handler] = {}
        self.register_handler(JobType.PROCESS_BATCH.value, batch_handlers.process_batch)
        self.register_handler(JobType.REPROCESS_BATCH.value, batch_handlers.reprocess_batch)
        self.register_handler(JobType.PROCESS_REDO.value, self.redo.execute)

        # State
        self._running = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._shutdown_event = asyncio.Event()
        self._wake_event = asyncio.Event()
        self._tasks: Dict[str, asyncio.Task] = {}
        self._active_projects: Dict[str, int] = {}
        self._active_batches: Set[str] = set()

        # Metrics
        self._processed_count = 0
        self._failed_count = 0
        self._start_time: Optional[datetime] = None

    def register_handler(self, job_type: str, handler: Handler) -> None:
        """
        Register a handler for a job type.

        Args:
            job_type: Type of job to handle
            handler: Async function taking the job and its context
        """
        self._handlers[job_type] = handler
        logger.info(f"Registered handler for job type: {job_type}")

    def notify(self) -> None:
        """Wake the worker; safe to call from any thread"""
        loop = self._loop
        if loop is not None and loop.is_running():
            loop.call_soon_threadsafe(self._wake_event.set)
        else:
            self._wake_event.set()

    def recover(self) -> Dict[str, int]:
        """Requeue jobs and reset batches left processing by a crashed predecessor"""
        requeued = self.queue.requeue_orphaned()
        reset = self.batches.reset_orphaned_processing()
        if requeued or reset:
            logger.info(f"Recovered {requeued} orphaned jobs and {reset} orphaned batches")
        return {'requeued_jobs': requeued, 'reset_batches': reset}

    async def run(self) -> None:
        """
        Run the worker.

        Dispatches admissible jobs until shutdown.
        """
        logger.info("Starting worker...")

        self._running = True
        self._loop = asyncio.get_running_loop()
        self._start_time = datetime.now(timezone.utc)

        # Set up signal handlers for graceful shutdown
        self._setup_signal_handlers()
        self.recover()

        try:
            while self._running and not self._shutdown_event.is_set():
                try:
                    self._wake_event.clear()
                    await self.dispatch()

                    # Wait for the next poll, a fresh enqueue or a finished job
                    try:
                        await asyncio.wait_for(
                            self._wake_event.wait(),
                            timeout=self.config.poll_interval
                        )
                    except asyncio.TimeoutError:
                        pass

                except Exception as e:
                    logger.exception(f"Worker loop error: {e}")
                    await asyncio.sleep(self.config.poll_interval)

        finally:
            # Wait for active jobs to complete
            if self._tasks:
                logger.info(f"Waiting for {len(self._tasks)} active jobs to complete...")
                try:
                    await asyncio.wait_for(
                        self._wait_for_active_jobs(),
                        timeout=self.config.shutdown_timeout
                    )
                except asyncio.TimeoutError:
                    logger.warning("Shutdown timeout - some jobs may not have completed")

            self._running = False
            logger.info(
                f"Worker stopped. Processed: {self._processed_count}, Failed: {self._failed_count}"
            )

    async def stop(self) -> None:
        """Stop the worker gracefully"""
        logger.info("Stopping worker...")
        self._running = False
        self._shutdown_event.set()
        self._wake_event.set()

    # ------------------------------------------------------------------
    # Admission and dispatch
    # ------------------------------------------------------------------

    async def dispatch(self) -> int:
        """
        Claim and start every admissible job

        Returns:
            Number of jobs started
        """
        if len(self._tasks) >= self.config.max_parallel_requests:
            return 0

        candidates = self.queue.fetch_candidates(
            limit=self.config.candidate_batch_size,
            exclude_ids=set(self._tasks)
        )
        limits_cache: Dict[str, Optional[Dict[str, Any]]] = {}
        started = 0

        for job in candidates:
            if len(self._tasks) >= self.config.max_parallel_requests:
                break
            if not self._admissible(job, limits_cache):
                continue
            if not self.queue.claim(job.id):
                continue

            if job.type == JobType.PROCESS_BATCH.value and job.batch_id:
                try:
                    with self.db.transaction() as session:
                        self.batches.mark_processing(session, job.batch_id)
                except PermanentJobError as e:
                    self.queue.mark_failed(job.id, str(e), retry=False)
                    continue
                except Exception as e:
                    logger.exception(f"Failed to start job {job.id}: {e}")
                    self.queue.mark_failed(job.id, str(e))
                    continue

            self._start(job)
            started += 1

        return started

    def _job_batch_ids(self, job: QueueJob) -> Set[str]:
        ids = set((job.payload or {}).get('batch_ids') or [])
        if job.batch_id:
            ids.add(job.batch_id)
        return ids

    def _admissible(self, job: QueueJob, limits_cache: Dict[str, Optional[Dict[str, Any]]]) -> bool:
        """Whether a candidate may start now; candidates that may not stay queued"""
        if self._job_batch_ids(job) & self._active_batches:
            return False

        project_id = job.project_id
        if project_id not in limits_cache:
            limits_cache[project_id] = self._project_admission(project_id)
        admission = limits_cache[project_id]
        if admission is None:
            # Project gone; let the handler fail the job
            return True

        limits = admission['limits']
        running = self._active_projects.get(project_id, 0)
        if running >= limits['max_parallel_requests']:
            return False
        if project_id not in self._active_projects and \
                len(self._active_projects) >= limits['max_concurrent_projects']:
            return False
        if not self.rate_limiter.can_proceed(project_id, limits['max_requests_per_minute']):
            return False

        endpoint_id = admission['endpoint_id']
        if endpoint_id:
            check = self.quota.check_endpoint_limits(endpoint_id, admission['owner_id'])
            if not check.allowed:
                logger.debug(f"Job {job.id} held back: {check.reason}")
                return False
        return True

    def _project_admission(self, project_id: str) -> Optional[Dict[str, Any]]:
        project = self.batches.get_project(project_id)
        if not project:
            return None
        try:
            limits = self.quota.get_project_limits(project_id)
        except NotFoundError:
            return None
        return {
            'limits': limits,
            'owner_id': project['owner_id'],
            'endpoint_id': managed_endpoint_id(project['settings'])
        }

    def _start(self, job: QueueJob) -> None:
        self._active_projects[job.project_id] = self._active_projects.get(job.project_id, 0) + 1
        self._active_batches.update(self._job_batch_ids(job))
        task = asyncio.create_task(self._process_job(job))
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, j=job: self._finish(j))

    def _finish(self, job: QueueJob) -> None:
        self._tasks.pop(job.id, None)
        remaining = self._active_projects.get(job.project_id, 1) - 1
        if remaining > 0:
            self._active_projects[job.project_id] = remaining
        else:
            self._active_projects.pop(job.project_id, None)
        self._active_batches.difference_update(self._job_batch_ids(job))
        self._wake_event.set()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _process_job(self, job: QueueJob) -> None:
        """Process a single claimed job"""
        context = JobContext.for_job(job)
        error: Optional[JobExecutionError] = None

        handler = self._handlers.get(job.type)
        try:
            if not handler:
                raise PermanentJobError(f"No handler registered for job type: {job.type}")

            # Execute handler with timeout
            await asyncio.wait_for(handler(job, context), timeout=self.config.job_timeout)
            self._processed_count += 1
            logger.info(f"Job {job.id} ({job.type}) completed")

        except JobCanceledError as e:
            error = e
            logger.info(f"Job {job.id} was canceled; result discarded")
            # A replacement job for the batch keeps it processing
            if (job.type == JobType.PROCESS_BATCH.value and job.batch_id
                    and not self.queue.has_live_job(job.batch_id)):
                self.batches.mark_failed(job.batch_id, CANCELED_MESSAGE)

        except asyncio.TimeoutError:
            error = TransientJobError(f"Job timeout after {self.config.job_timeout:g}s")
            await self._handle_failure(job, error)

        except JobExecutionError as e:
            error = e
            await self._handle_failure(job, e)

        except Exception as e:
            logger.exception(f"Unexpected error in job {job.id}: {e}")
            error = TransientJobError(str(e))
            await self._handle_failure(job, error)

        if job.type != JobType.REPROCESS_BATCH.value:
            self.metrics.record(
                job_id=job.id,
                job_type=job.type,
                project_id=job.project_id,
                batch_id=job.batch_id,
                started_at=context.started_at,
                status=STATUS_FAILED if error else STATUS_SUCCESS,
                image_count=context.image_count,
                extraction_count=context.extraction_count,
                model_used=context.model_used,
                input_tokens=context.input_tokens,
                output_tokens=context.output_tokens,
                request_details=context.request_details,
                error_message=str(error) if error else None
            )

    async def _handle_failure(self, job: QueueJob, error: JobExecutionError) -> None:
        """Record the failed attempt; fail the batch once the job is terminal"""
        try:
            status = self.queue.mark_failed(job.id, str(error), retry=error.retryable)
        except Exception as e:
            logger.error(f"Failed to record failure of job {job.id}: {e}")
            return

        if status in (JobStatus.FAILED.value, JobStatus.CANCELED.value):
            self._failed_count += 1
            if job.type == JobType.PROCESS_BATCH.value and job.batch_id:
                canceled = status == JobStatus.CANCELED.value
                if canceled and self.queue.has_live_job(job.batch_id):
                    return
                message = CANCELED_MESSAGE if canceled else str(error)
                try:
                    self.batches.mark_failed(job.batch_id, message)
                except Exception as e:
                    logger.error(f"Failed to mark batch {job.batch_id} failed: {e}")

    async def _wait_for_active_jobs(self) -> None:
        """Wait for all active jobs to complete"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def _setup_signal_handlers(self) -> None:
        """Set up signal handlers for graceful shutdown"""
        try:
            loop = asyncio.get_running_loop()

            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(
                    sig,
                    lambda: asyncio.create_task(self.stop())
                )
        except (NotImplementedError, RuntimeError):
            # Signal handling not available (e.g., Windows or a non-main thread)
            pass

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        uptime = None
        if self._start_time:
            uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()

        return {
            'running': self._running,
            'active_jobs': len(self._tasks),
            'active_projects': sorted(self._active_projects),
            'max_parallel_requests': self.config.max_parallel_requests,
            'processed_count': self._processed_count,
            'failed_count': self._failed_count,
            'uptime_seconds': uptime,
            'handlers_registered': list(self._handlers.keys())
        }


async def run_worker(
    db: Database,
    config: Optional[WorkerConfig] = None,
    storage: Optional[FileSystemStorage] = None,
    with_reaper: bool = True
) -> None:
    """
    Convenience function to run a worker, and by default the reaper, until stopped.

    Args:
        db: Database instance
        config: Optional worker configuration
        storage: Image storage; built from configuration when omitted
        with_reaper: Also run the stale batch reaper
    """
    worker = Worker(db, config, storage=storage)
    worker.queue.on_enqueue = worker.notify
    QuotaLedger(db).sync_predefined_endpoints()

    if not with_reaper:
        await worker.run()
        return

    reaper = StaleBatchReaper(db, worker.queue)
    reaper_task = asyncio.create_task(reaper.run())
    try:
        await worker.run()
    finally:
        await reaper.stop()
        await reaper_task
