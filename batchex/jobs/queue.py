"""
Job Queue

Durable queue of batch processing work items backed by the ``queue_jobs``
table. All state changes are single statements or single transactions; the
claim is a conditional UPDATE so a job is never handed out twice.
"""

import logging
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, update, delete, func, and_, or_
from sqlalchemy.orm import Session

from batchex.config.batchex_config import BatchExConfig
from batchex.db.connection import Database
from batchex.db.models import QueueJob, new_id, utcnow
from batchex.exceptions import ValidationError

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Job execution status"""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELED = "canceled"


class JobType(str, Enum):
    """Kinds of work the worker knows how to run"""
    PROCESS_BATCH = "process_batch"
    REPROCESS_BATCH = "reprocess_batch"
    PROCESS_REDO = "process_redo"


LIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RETRYING.value, JobStatus.PROCESSING.value)
CLAIMABLE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RETRYING.value)

DEFAULT_PRIORITY = 10
REDO_PRIORITY = 5
DEFAULT_MAX_ATTEMPTS = 3
CANCELED_BY_USER = "Canceled by user"


class JobQueue:
    """
    Queue for batch processing jobs.

    Provides methods for:
    - Enqueuing jobs, replacing live jobs for the same batch
    - Priority-based claiming
    - Retry bookkeeping with exponential backoff
    - Cancel and housekeeping

    Usage:
        queue = JobQueue(db)

        job_id, canceled = queue.enqueue_batch('bat_123', 'prj_1')

        # Worker side
        for job in queue.fetch_candidates(limit=10):
            if queue.claim(job.id):
                ...
    """

    def __init__(
        self,
        db: Database,
        config: Optional[BatchExConfig] = None,
        on_enqueue: Optional[Callable[[], None]] = None
    ):
        self.db = db
        self.config = config or db.config
        # Wake signal for the worker, called after each committed enqueue
        self.on_enqueue = on_enqueue

        self.default_priority = self.config.get('queue.default_priority', DEFAULT_PRIORITY)
        self.redo_priority = self.config.get('queue.redo_priority', REDO_PRIORITY)
        self.max_attempts = self.config.get('queue.max_attempts', DEFAULT_MAX_ATTEMPTS)
        self.retry_delay_base = float(self.config.get('queue.retry_delay_base', 1.0))
        self.retry_delay_max = float(self.config.get('queue.retry_delay_max', 60.0))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None
    ) -> str:
        """
        Enqueue a job for processing.

        Args:
            job_type: One of ``JobType``
            payload: Job data; must carry ``project_id``
            priority: Lower is served first
            max_attempts: Attempts before the job stays failed

        Returns:
            Job ID
        """
        with self.db.transaction() as session:
            job = self._insert(session, job_type, payload, priority, max_attempts)
            job_id = job.id

        logger.info(f"Enqueued {job_type} job {job_id} for project {payload.get('project_id')}")
        self._notify()
        return job_id

    def enqueue_batch(
        self,
        batch_id: str,
        project_id: str,
        priority: Optional[int] = None
    ) -> Tuple[str, int]:
        """
        Enqueue one batch, canceling any live job for it first.

        Returns:
            (job_id, canceled_count)
        """
        job_ids, canceled = self.enqueue_batches([batch_id], project_id, priority)
        return job_ids[0], canceled

    def enqueue_batches(
        self,
        batch_ids: Sequence[str],
        project_id: str,
        priority: Optional[int] = None
    ) -> Tuple[List[str], int]:
        """
        Enqueue several batches in one transaction.

        Every queued, retrying or processing job that references one of the
        batches is canceled in the same transaction as the insert.

        Returns:
            (job_ids, canceled_count)
        """
        if not batch_ids:
            raise ValidationError("At least one batch id is required")

        unique_ids = list(dict.fromkeys(batch_ids))
        with self.db.transaction() as session:
            canceled = self._cancel_live(
                session,
                and_(QueueJob.project_id == project_id, QueueJob.batch_id.in_(unique_ids)),
                "Superseded by a new enqueue"
            )
            job_ids = [
                self._insert(
                    session,
                    JobType.PROCESS_BATCH.value,
                    {'batch_id': batch_id, 'project_id': project_id},
                    priority
                ).id
                for batch_id in unique_ids
            ]

        if canceled:
            logger.info(f"Canceled {canceled} prior jobs for {len(unique_ids)} batches")
        logger.info(f"Enqueued {len(job_ids)} batch jobs for project {project_id}")
        self._notify()
        return job_ids, canceled

    def _insert(
        self,
        session: Session,
        job_type: str,
        payload: Dict[str, Any],
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None
    ) -> QueueJob:
        job_type = job_type.value if isinstance(job_type, JobType) else job_type
        if job_type not in {t.value for t in JobType}:
            raise ValidationError(f"Unknown job type: {job_type}")
        if not payload or not payload.get('project_id'):
            raise ValidationError("Job payload requires project_id")

        job = QueueJob(
            id=new_id('job'),
            type=job_type,
            status=JobStatus.QUEUED.value,
            priority=int(priority if priority is not None else self.default_priority),
            payload=dict(payload),
            batch_id=payload.get('batch_id'),
            project_id=payload['project_id'],
            attempts=0,
            max_attempts=int(max_attempts if max_attempts is not None else self.max_attempts),
            created_at=utcnow()
        )
        session.add(job)
        session.flush()
        return job

    def _notify(self) -> None:
        if self.on_enqueue is None:
            return
        try:
            self.on_enqueue()
        except Exception as e:
            logger.warning(f"Enqueue notification failed: {e}")

    # ------------------------------------------------------------------
    # Cancel / retry
    # ------------------------------------------------------------------

    def _cancel_live(self, session: Session, condition, reason: str) -> int:
        now = utcnow()
        result = session.execute(
            update(QueueJob)
            .where(and_(condition, QueueJob.status.in_(LIVE_STATUSES)))
            .values(
                status=JobStatus.CANCELED.value,
                last_error=reason,
                completed_at=now,
                updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def cancel(self, project_id: str, batch_ids: Optional[Sequence[str]] = None) -> int:
        """
        Cancel queued, retrying and processing jobs of a project.

        A processing job keeps running until its model call returns; the worker
        then sees the canceled status and discards the result.

        Returns:
            Number of jobs canceled
        """
        condition = QueueJob.project_id == project_id
        if batch_ids:
            condition = and_(condition, QueueJob.batch_id.in_(list(batch_ids)))

        with self.db.transaction() as session:
            canceled = self._cancel_live(session, condition, CANCELED_BY_USER)

        logger.info(f"Canceled {canceled} jobs for project {project_id}")
        return canceled

    def cancel_job(self, job_id: str, reason: str = CANCELED_BY_USER) -> bool:
        """Cancel a single live job"""
        with self.db.transaction() as session:
            canceled = self._cancel_live(session, QueueJob.id == job_id, reason)
        return canceled == 1

    def retry(self, job_id: str) -> bool:
        """
        Reset a failed job to queued with a fresh attempt budget.

        Returns:
            True if the job was reset; False if it is not failed or its batch
            already has another live job
        """
        with self.db.transaction() as session:
            job = session.get(QueueJob, job_id)
            if not job or job.status != JobStatus.FAILED.value:
                return False

            if job.batch_id and self._has_live_job(session, job.batch_id):
                logger.warning(f"Not retrying job {job_id}: batch {job.batch_id} already has a live job")
                return False

            result = session.execute(
                update(QueueJob)
                .where(and_(QueueJob.id == job_id, QueueJob.status == JobStatus.FAILED.value))
                .values(
                    status=JobStatus.QUEUED.value,
                    attempts=0,
                    last_error=None,
                    retry_after=None,
                    started_at=None,
                    completed_at=None,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            reset = result.rowcount == 1

        if reset:
            logger.info(f"Reset job {job_id} to queued")
            self._notify()
        return reset

    def retry_all_failed(self, project_id: Optional[str] = None) -> int:
        """Retry every failed job of a project, or of the whole instance"""
        with self.db.session() as session:
            query = select(QueueJob.id).where(QueueJob.status == JobStatus.FAILED.value)
            if project_id:
                query = query.where(QueueJob.project_id == project_id)
            job_ids = session.execute(query.order_by(QueueJob.created_at)).scalars().all()

        return sum(1 for job_id in job_ids if self.retry(job_id))

    # ------------------------------------------------------------------
    # Worker side
    # ------------------------------------------------------------------

    def fetch_candidates(self, limit: int = 50, exclude_ids: Optional[Set[str]] = None) -> List[QueueJob]:
        """
        List claimable jobs in service order.

        Queued jobs, plus retrying jobs whose backoff has elapsed, ordered by
        priority then creation time.
        """
        now = utcnow()
        with self.db.session() as session:
            query = (
                select(QueueJob)
                .where(or_(
                    QueueJob.status == JobStatus.QUEUED.value,
                    and_(
                        QueueJob.status == JobStatus.RETRYING.value,
                        or_(QueueJob.retry_after.is_(None), QueueJob.retry_after <= now)
                    )
                ))
                .order_by(QueueJob.priority.asc(), QueueJob.created_at.asc(), QueueJob.id.asc())
                .limit(limit)
            )
            if exclude_ids:
                query = query.where(QueueJob.id.notin_(list(exclude_ids)))
            return list(session.execute(query).scalars().all())

    def claim(self, job_id: str) -> bool:
        """Atomically move a claimable job to processing"""
        now = utcnow()
        with self.db.transaction() as session:
            result = session.execute(
                update(QueueJob)
                .where(and_(QueueJob.id == job_id, QueueJob.status.in_(CLAIMABLE_STATUSES)))
                .values(status=JobStatus.PROCESSING.value, started_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            claimed = result.rowcount == 1

        if claimed:
            logger.debug(f"Claimed job {job_id}")
        return claimed

    def complete_in(self, session: Session, job_id: str) -> bool:
        """Mark a processing job completed inside the caller's transaction"""
        now = utcnow()
        result = session.execute(
            update(QueueJob)
            .where(and_(QueueJob.id == job_id, QueueJob.status == JobStatus.PROCESSING.value))
            .values(status=JobStatus.COMPLETED.value, completed_at=now, updated_at=now, last_error=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def mark_completed(self, job_id: str) -> bool:
        """Mark a processing job completed; False if it was canceled meanwhile"""
        with self.db.transaction() as session:
            return self.complete_in(session, job_id)

    def retry_delay(self, attempts: int) -> float:
        """Backoff before the next attempt, doubling per attempt"""
        return min(self.retry_delay_base * (2 ** attempts), self.retry_delay_max)

    def mark_failed(self, job_id: str, error: str, retry: bool = True) -> Optional[str]:
        """
        Record a failed attempt.

        Retryable failures consume an attempt and move the job to retrying
        until ``max_attempts`` is reached; non-retryable failures fail the job
        immediately without consuming one. Jobs no longer processing (for
        example canceled) are left alone.

        Returns:
            The job's resulting status, or None if it does not exist
        """
        with self.db.transaction() as session:
            job = session.get(QueueJob, job_id)
            if not job:
                return None
            if job.status != JobStatus.PROCESSING.value:
                return job.status

            now = utcnow()
            job.last_error = error
            job.updated_at = now

            if retry:
                job.attempts = (job.attempts or 0) + 1
                if job.attempts < job.max_attempts:
                    delay = self.retry_delay(job.attempts)
                    job.status = JobStatus.RETRYING.value
                    job.retry_after = now + timedelta(seconds=delay)
                    logger.info(
                        f"Job {job_id} scheduled for retry "
                        f"({job.attempts}/{job.max_attempts}) in {delay}s"
                    )
                    return job.status

            job.status = JobStatus.FAILED.value
            job.completed_at = now
            job.retry_after = None
            logger.warning(f"Job {job_id} failed after {job.attempts} attempts: {error}")
            return job.status

    def requeue_orphaned(self) -> int:
        """Return jobs left processing by a crashed worker to the queue"""
        with self.db.transaction() as session:
            result = session.execute(
                update(QueueJob)
                .where(QueueJob.status == JobStatus.PROCESSING.value)
                .values(status=JobStatus.QUEUED.value, started_at=None, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0

        if count:
            logger.info(f"Re-queued {count} orphaned processing jobs")
        return count

    def fail_processing_for_batches(self, session: Session, batch_ids: Sequence[str], error: str) -> int:
        """Fail processing jobs of the given batches inside the caller's transaction"""
        if not batch_ids:
            return 0
        now = utcnow()
        result = session.execute(
            update(QueueJob)
            .where(and_(
                QueueJob.batch_id.in_(list(batch_ids)),
                QueueJob.status == JobStatus.PROCESSING.value
            ))
            .values(status=JobStatus.FAILED.value, last_error=error, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def _has_live_job(self, session: Session, batch_id: str) -> bool:
        count = session.execute(
            select(func.count(QueueJob.id)).where(and_(
                QueueJob.batch_id == batch_id,
                QueueJob.status.in_(LIVE_STATUSES)
            ))
        ).scalar()
        return bool(count)

    def has_live_job(self, batch_id: str) -> bool:
        with self.db.session() as session:
            return self._has_live_job(session, batch_id)

    def active_project_ids(self) -> Set[str]:
        """Projects that currently have a processing job"""
        with self.db.session() as session:
            rows = session.execute(
                select(QueueJob.project_id)
                .where(QueueJob.status == JobStatus.PROCESSING.value)
                .distinct()
            ).scalars().all()
            return set(rows)

    # ------------------------------------------------------------------
    # Read paths / housekeeping
    # ------------------------------------------------------------------

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get the current job record"""
        with self.db.session() as session:
            job = session.get(QueueJob, job_id)
            return job.to_dict() if job else None

    def get_jobs_by_project(self, project_id: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.db.session() as session:
            query = select(QueueJob).where(QueueJob.project_id == project_id)
            if status:
                query = query.where(QueueJob.status == status)
            query = query.order_by(QueueJob.created_at.desc())
            return [job.to_dict() for job in session.execute(query).scalars().all()]

    def get_stats(self, project_id: Optional[str] = None) -> Dict[str, int]:
        """Queue depth by status"""
        with self.db.session() as session:
            query = select(QueueJob.status, func.count(QueueJob.id)).group_by(QueueJob.status)
            if project_id:
                query = query.where(QueueJob.project_id == project_id)
            counts = dict(session.execute(query).all())

        stats = {status.value: int(counts.get(status.value, 0)) for status in JobStatus}
        stats['total_jobs'] = sum(stats.values())
        return stats

    def clear_completed(self, older_than_days: int = 7) -> int:
        """
        Clear completed jobs older than specified days.

        Returns:
            Number of jobs cleared
        """
        cutoff = utcnow() - timedelta(days=older_than_days)

        with self.db.transaction() as session:
            result = session.execute(
                delete(QueueJob)
                .where(and_(
                    QueueJob.status == JobStatus.COMPLETED.value,
                    QueueJob.completed_at < cutoff
                ))
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount or 0

        logger.info(f"Cleared {count} completed jobs")
        return count
