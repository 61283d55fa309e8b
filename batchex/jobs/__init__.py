"""
BatchEx Jobs Module

Provides async job execution for batch extraction.

Components:
- JobQueue: Durable queue of batch, reprocess and redo jobs
- Worker: Admits, claims and executes queued jobs
- RedoScheduler: Narrow re-extraction of selected row columns
- StaleBatchReaper: Fails batches stuck in processing
- MetricsRecorder: Per-job processing metrics
- ProjectRateLimiter: Per-project requests-per-minute window
"""

from .queue import JobQueue, JobStatus, JobType
from .worker import Worker, WorkerConfig, run_worker
from .redo import RedoScheduler
from .reaper import StaleBatchReaper
from .metrics import MetricsRecorder
from .rate_limiter import ProjectRateLimiter

__all__ = [
    # Queue
    'JobQueue',
    'JobStatus',
    'JobType',

    # Worker
    'Worker',
    'WorkerConfig',
    'run_worker',

    # Sub-schedulers
    'RedoScheduler',
    'StaleBatchReaper',

    # Metrics and limits
    'MetricsRecorder',
    'ProjectRateLimiter'
]
