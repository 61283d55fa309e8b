"""
BatchEx exceptions

Admission errors are raised synchronously to callers. Job execution errors are
raised inside the worker and decide whether a job is retried.
"""

from typing import Optional


class BatchExError(Exception):
    """Base class for all BatchEx errors"""


class ValidationError(BatchExError):
    """Request is missing fields or carries invalid values"""


class NotFoundError(BatchExError):
    """Requested entity does not exist"""


class AccessDeniedError(BatchExError):
    """Caller does not own the project"""


class InvalidTransitionError(BatchExError):
    """Batch status change is not allowed from its current status"""

    def __init__(self, batch_id: str, current: str, target: str):
        self.batch_id = batch_id
        self.current = current
        self.target = target
        super().__init__(f"Batch {batch_id} cannot move from '{current}' to '{target}'")


class AdmissionError(BatchExError):
    """Work was refused before it entered the queue"""


class LimitExceededError(AdmissionError):
    """A quota or rate limit denied admission"""

    limit_exceeded = True

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class JobExecutionError(BatchExError):
    """Base class for errors raised while executing a job"""

    retryable = True


class TransientJobError(JobExecutionError):
    """Timeouts, upstream 5xx and malformed model output"""

    retryable = True


class PermanentJobError(JobExecutionError):
    """Invalid payload or missing entities; retrying cannot help"""

    retryable = False


class JobCanceledError(JobExecutionError):
    """The job was canceled while its model call was in flight"""

    retryable = False

    def __init__(self, job_id: str, message: Optional[str] = None):
        self.job_id = job_id
        super().__init__(message or f"Job {job_id} was canceled")
