"""
In-process queue for best-effort side effects of a committed batch
(audit rows, student notifications).

Jobs run outside the commit's transaction.  drain() runs every pending job
once; a job that raises goes back on the queue with its attempt count bumped
until SIDE_EFFECT_MAX_ATTEMPTS, after which it is dropped with an ERROR log.
The API drains after each response (FastAPI background task) and on an
APScheduler interval, so nothing here ever delays or fails a caller.

Queued jobs are lost on restart.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from config import SIDE_EFFECT_MAX_ATTEMPTS

logger = logging.getLogger(__name__)


@dataclass
class SideEffectJob:
    name: str
    func: Callable[..., Any]
    args: tuple = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class SideEffectQueue:
    def __init__(self, max_attempts: int = SIDE_EFFECT_MAX_ATTEMPTS):
        self.max_attempts = max_attempts
        self._pending: list[SideEffectJob] = []
        self._lock = threading.Lock()
        self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def enqueue(self, name: str, func: Callable[..., Any], *args, **kwargs) -> SideEffectJob:
        job = SideEffectJob(name=name, func=func, args=args, kwargs=kwargs)
        with self._lock:
            self._pending.append(job)
        return job

    def pending(self) -> list[SideEffectJob]:
        with self._lock:
            return list(self._pending)

    def drain(self) -> int:
        """Run every pending job once.  Returns how many succeeded."""
        with self._lock:
            jobs, self._pending = self._pending, []

        succeeded = 0
        retry: list[SideEffectJob] = []
        for job in jobs:
            job.attempts += 1
            try:
                job.func(*job.args, **job.kwargs)
            except Exception as exc:
                job.last_error = str(exc)
                if job.attempts >= self.max_attempts:
                    self.dropped += 1
                    logger.error(
                        "Side effect %s dropped after %d attempts: %s",
                        job.name, job.attempts, exc, exc_info=True,
                    )
                else:
                    logger.warning(
                        "Side effect %s failed (attempt %d/%d), will retry: %s",
                        job.name, job.attempts, self.max_attempts, exc,
                    )
                    retry.append(job)
                continue
            succeeded += 1

        if retry:
            with self._lock:
                self._pending = retry + self._pending
        return succeeded
