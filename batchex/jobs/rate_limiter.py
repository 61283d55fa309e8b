"""
Rate Limiter

Sliding-window request limiting per project for model calls.
Supports:
- Non-blocking admission checks for the scheduler
- Blocking acquire for follow-up calls inside a running job
- Usage reporting
"""

import asyncio
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


@dataclass
class UsageWindow:
    """Request timestamps inside the current one-minute window"""
    timestamps: Deque[float] = field(default_factory=deque)
    total_requests: int = 0

    def prune(self, now: float) -> None:
        """Drop timestamps older than the window"""
        while self.timestamps and now - self.timestamps[0] >= WINDOW_SECONDS:
            self.timestamps.popleft()


class ProjectRateLimiter:
    """
    Per-project requests-per-minute limiter.

    Usage:
        limiter = ProjectRateLimiter()

        # Scheduler admission
        if limiter.can_proceed('prj_1', limit=60):
            ...

        # Inside a job, wait for the window
        await limiter.acquire('prj_1', limit=60)
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self._usage: Dict[str, UsageWindow] = defaultdict(UsageWindow)
        self._lock = asyncio.Lock()

    def can_proceed(self, project_id: str, limit: int) -> bool:
        """Whether one more request fits in the project's window"""
        if not limit or limit <= 0:
            return True
        window = self._usage[project_id]
        window.prune(self._clock())
        return len(window.timestamps) < limit

    def record(self, project_id: str) -> None:
        """Count one request against the project"""
        window = self._usage[project_id]
        now = self._clock()
        window.prune(now)
        window.timestamps.append(now)
        window.total_requests += 1

    def wait_time(self, project_id: str, limit: int) -> float:
        """Seconds until the oldest request leaves the window"""
        window = self._usage[project_id]
        now = self._clock()
        window.prune(now)
        if not limit or len(window.timestamps) < limit:
            return 0.0
        return max(0.0, WINDOW_SECONDS - (now - window.timestamps[0]))

    async def acquire(self, project_id: str, limit: int) -> None:
        """
        Block until the project may make another request, then record it.

        Args:
            project_id: Project the request is counted against
            limit: Requests allowed per minute
        """
        async with self._lock:
            while not self.can_proceed(project_id, limit):
                delay = self.wait_time(project_id, limit)
                logger.debug(f"Project {project_id} rate limited, waiting {delay:.2f}s")

                # Release lock while waiting
                self._lock.release()
                try:
                    await asyncio.sleep(delay)
                finally:
                    await self._lock.acquire()

            self.record(project_id)

    def get_usage(self, project_id: str) -> Dict[str, Any]:
        """Get current usage statistics"""
        window = self._usage[project_id]
        window.prune(self._clock())
        return {
            'project_id': project_id,
            'requests_last_minute': len(window.timestamps),
            'total_requests': window.total_requests
        }

    def reset(self, project_id: Optional[str] = None) -> None:
        if project_id is None:
            self._usage.clear()
        else:
            self._usage.pop(project_id, None)
