"""
Queue service

Framework-neutral implementation of the queue API. A web layer maps return
values to responses and exceptions to status codes: ``LimitExceededError``
to 429, ``ValidationError`` to 400, ``AccessDeniedError`` to 403 and
``NotFoundError`` to 404.
"""

import logging
from typing import Optional, List, Dict, Any, Sequence

from batchex.context import UserContext
from batchex.db.connection import Database
from batchex.exceptions import ValidationError, NotFoundError, AccessDeniedError, LimitExceededError
from batchex.jobs.metrics import MetricsRecorder, TIME_RANGES
from batchex.jobs.queue import JobQueue, DEFAULT_PRIORITY
from batchex.jobs.redo import RedoScheduler
from batchex.services.batch_service import BatchService
from batchex.services.quota_service import QuotaLedger
from batchex.storage.filesystem_storage import FileSystemStorage

logger = logging.getLogger(__name__)


class QueueService:
    """
    Service for queue operations

    Every call may carry a ``UserContext``; when present, project ownership is
    enforced and admins bypass it.
    """

    def __init__(
        self,
        db: Database,
        storage: Optional[FileSystemStorage] = None,
        worker=None
    ):
        """
        Initialize the queue service

        Args:
            db: Database instance
            storage: Image storage, needed to delete image files
            worker: Optional in-process ``Worker``; its components are shared
                and enqueues wake it
        """
        self.db = db
        self.worker = worker
        if worker is not None:
            self.queue = worker.queue
            self.batches = worker.batches
            self.quota = worker.quota
            self.metrics_recorder = worker.metrics
            self.redo_scheduler = worker.redo
            self.queue.on_enqueue = worker.notify
        else:
            self.queue = JobQueue(db)
            self.batches = BatchService(db, storage, self.queue)
            self.quota = QuotaLedger(db)
            self.metrics_recorder = MetricsRecorder(db)
            self.redo_scheduler = RedoScheduler(db, self.queue, self.batches, storage)

    # ------------------------------------------------------------------
    # Access helpers
    # ------------------------------------------------------------------

    def _check_project(self, project_id: Optional[str], user: Optional[UserContext]) -> Dict[str, Any]:
        if not project_id:
            raise ValidationError("project_id is required")
        project = self.batches.get_project(project_id)
        if not project:
            raise NotFoundError(f"Project {project_id} not found")
        if user is not None and not user.is_admin and project['owner_id'] != user.user_id:
            raise AccessDeniedError(f"Access denied to project {project_id}")
        return project

    def _visible_projects(self, project_id: Optional[str], user: Optional[UserContext]) -> Optional[List[str]]:
        """Project filter for read paths; None means every project"""
        if project_id:
            self._check_project(project_id, user)
            return [project_id]
        if user is None or user.is_admin:
            return None
        return self.batches.list_project_ids(user.user_id)

    def _admit(self, project_id: str) -> None:
        check = self.quota.check_project_processing_limits(project_id)
        if not check.allowed:
            logger.info(f"Refused work for project {project_id}: {check.reason}")
            raise LimitExceededError(check.reason)

    @staticmethod
    def _check_time_range(time_range: str) -> None:
        if time_range not in TIME_RANGES:
            raise ValidationError(f"Invalid time range: {time_range}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def enqueue(
        self,
        project_id: str,
        batch_id: Optional[str] = None,
        batch_ids: Optional[Sequence[str]] = None,
        priority: int = DEFAULT_PRIORITY,
        user: Optional[UserContext] = None
    ) -> Dict[str, Any]:
        """
        Enqueue one batch or several batches

        Prior live jobs for the same batches are canceled first.
        """
        self._check_project(project_id, user)
        if not batch_id and not batch_ids:
            raise ValidationError("Either batch_id or batch_ids must be provided")
        if batch_ids is not None and not isinstance(batch_ids, (list, tuple)):
            raise ValidationError("batch_ids must be a list")

        self._admit(project_id)

        targets = [batch_id] if batch_id else list(batch_ids)
        for target in targets:
            batch = self.batches.get_batch(target)
            if not batch or batch['project_id'] != project_id:
                raise NotFoundError(f"Batch {target} not found in project {project_id}")

        job_ids, canceled = self.queue.enqueue_batches(targets, project_id, priority)
        if batch_id:
            return {'job_id': job_ids[0], 'canceled_count': canceled}
        return {'job_ids': job_ids, 'canceled_count': canceled}

    def get_status(self, job_id: str, user: Optional[UserContext] = None) -> Dict[str, Any]:
        job = self.queue.get_job(job_id)
        if not job:
            raise NotFoundError(f"Job {job_id} not found")
        self._check_project(job['project_id'], user)
        return job

    def retry(
        self,
        project_id: str,
        job_id: Optional[str] = None,
        retry_all: bool = False,
        user: Optional[UserContext] = None
    ) -> Dict[str, int]:
        """Reset one failed job, or every failed job of the project, to queued"""
        self._check_project(project_id, user)
        if not job_id and not retry_all:
            raise ValidationError("Either job_id or retry_all must be provided")

        self._admit(project_id)

        if retry_all:
            return {'retried': self.queue.retry_all_failed(project_id)}

        job = self.queue.get_job(job_id)
        if not job or job['project_id'] != project_id:
            raise NotFoundError(f"Job {job_id} not found in project {project_id}")
        return {'retried': 1 if self.queue.retry(job_id) else 0}

    def redo(
        self,
        batch_id: str,
        project_id: str,
        row_index: int,
        redo_column_ids: Sequence[str],
        cropped_image_ids: Dict[str, str],
        source_image_ids: Optional[Dict[str, str]] = None,
        priority: Optional[int] = None,
        user: Optional[UserContext] = None
    ) -> Dict[str, str]:
        self._check_project(project_id, user)
        self._admit(project_id)
        job_id = self.redo_scheduler.enqueue_redo(
            batch_id, project_id, row_index, redo_column_ids,
            cropped_image_ids, source_image_ids, priority
        )
        return {'job_id': job_id}

    def cancel(
        self,
        project_id: str,
        batch_ids: Optional[Sequence[str]] = None,
        user: Optional[UserContext] = None
    ) -> Dict[str, int]:
        """Cancel live jobs and fail the affected pending or processing batches"""
        self._check_project(project_id, user)
        canceled = self.queue.cancel(project_id, batch_ids)
        reset = self.batches.fail_for_cancel(project_id, batch_ids)
        return {'canceled_count': canceled, 'batches_reset': reset}

    def stats(self, project_id: Optional[str] = None, user: Optional[UserContext] = None) -> Dict[str, Any]:
        """Queue depth by status and a snapshot of the worker"""
        if project_id:
            self._check_project(project_id, user)
        stats: Dict[str, Any] = self.queue.get_stats(project_id)
        stats['worker'] = self.worker.get_stats() if self.worker is not None else {'running': False}
        return stats

    def metrics(
        self,
        project_id: Optional[str] = None,
        time_range: str = '24h',
        user: Optional[UserContext] = None
    ) -> Dict[str, Any]:
        self._check_time_range(time_range)
        project_ids = self._visible_projects(project_id, user)
        return {
            'stats': self.metrics_recorder.summarize(project_ids, time_range),
            'time_range': time_range
        }

    def batch_metrics(
        self,
        project_id: Optional[str] = None,
        time_range: str = '24h',
        page: int = 1,
        per_page: int = 50,
        user: Optional[UserContext] = None
    ) -> Dict[str, Any]:
        self._check_time_range(time_range)
        project_ids = self._visible_projects(project_id, user)
        return self.metrics_recorder.batch_metrics(project_ids, time_range, page, per_page)

    def change_batch_status(
        self,
        batch_ids: Sequence[str],
        target_status: str,
        project_id: str,
        user: Optional[UserContext] = None
    ) -> Dict[str, int]:
        self._check_project(project_id, user)
        if not batch_ids:
            raise ValidationError("batch_ids must not be empty")
        success, failed = self.batches.set_status(batch_ids, target_status, project_id)
        return {'success_count': success, 'fail_count': failed}

    def delete_batches(
        self,
        batch_ids: Sequence[str],
        project_id: str,
        user: Optional[UserContext] = None
    ) -> Dict[str, int]:
        self._check_project(project_id, user)
        if not batch_ids:
            raise ValidationError("batch_ids must not be empty")
        success, failed = self.batches.delete_batches(batch_ids, project_id)
        return {'success_count': success, 'fail_count': failed}

    def instance_limits(self) -> Dict[str, int]:
        return self.quota.get_instance_limits()
