"""
APScheduler-based one-shot task scheduler for lease and token renewal.

Every renewal computes its own next delay from the lease it just obtained, so
tasks are one-shot ('date' trigger), never fixed-rate. Tasks run on a small
thread pool, not on the thread that scheduled them.

Example:
    >>> scheduler = TaskScheduler(pool_size=2)
    >>> scheduler.start()
    >>> task = scheduler.schedule(renew, delay_seconds=3540, name="renew database/creds/app")
    >>> task.cancel()  # best-effort; a task that already started keeps running
    >>> scheduler.shutdown()
"""

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Protocol

from apscheduler.executors.pool import ThreadPoolExecutor  # type: ignore[import-untyped]
from apscheduler.jobstores.base import JobLookupError  # type: ignore[import-untyped]
from apscheduler.schedulers.background import BackgroundScheduler  # type: ignore[import-untyped]
from apscheduler.schedulers.base import STATE_STOPPED  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


class ScheduledTask(Protocol):
    def cancel(self) -> bool: ...


class TaskSchedulerProtocol(Protocol):
    """What the renewal scheduler and session manager need from a timer service."""

    def start(self) -> None: ...

    def shutdown(self, wait: bool = False) -> None: ...

    def schedule(
        self, func: Callable[[], None], delay_seconds: float, name: str | None = None
    ) -> ScheduledTask: ...


class _ApschedulerTask:
    """Handle for a pending APScheduler job."""

    def __init__(self, scheduler: BackgroundScheduler, job_id: str) -> None:
        self._scheduler = scheduler
        self.job_id = job_id

    def cancel(self) -> bool:
        """
        Remove the job if it has not run yet.

        Returns:
            True if the job was removed, False if it already ran or was canceled.
        """
        try:
            self._scheduler.remove_job(self.job_id)
            return True
        except JobLookupError:
            # APScheduler removes one-shot jobs as soon as they are submitted
            logger.debug("Job already removed (likely executed)", extra={"job_id": self.job_id})
            return False


class TaskScheduler:
    """
    Thread-pool-backed timer service built on APScheduler's BackgroundScheduler.

    Notes:
        - misfire_grace_time=None: a task whose fire time passed while the
          process was suspended still runs once the scheduler wakes up
        - Scheduling is non-blocking; tasks added before start() run once started
    """

    def __init__(self, pool_size: int = 2, thread_name_prefix: str = "vault-config") -> None:
        if pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {pool_size}")
        self._thread_name_prefix = thread_name_prefix
        self.scheduler = BackgroundScheduler(
            timezone="UTC",
            executors={
                "default": ThreadPoolExecutor(
                    max_workers=pool_size,
                    pool_kwargs={"thread_name_prefix": thread_name_prefix},
                )
            },
            job_defaults={"misfire_grace_time": None, "coalesce": False, "max_instances": 1},
            daemon=True,
        )

    @property
    def running(self) -> bool:
        return bool(self.scheduler.running)

    def start(self) -> None:
        """Start the background scheduler thread (idempotent)."""
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("TaskScheduler started", extra={"scheduler": self._thread_name_prefix})

    def shutdown(self, wait: bool = False) -> None:
        """Stop the scheduler; pending tasks are discarded (idempotent)."""
        if self.scheduler.state == STATE_STOPPED:
            return
        self.scheduler.shutdown(wait=wait)
        logger.info("TaskScheduler shutdown complete", extra={"scheduler": self._thread_name_prefix})

    def schedule(
        self, func: Callable[[], None], delay_seconds: float, name: str | None = None
    ) -> _ApschedulerTask:
        """
        Run ``func`` once, ``delay_seconds`` from now, on a pool thread.

        Args:
            func: Zero-argument callable. Exceptions it raises are logged by APScheduler.
            delay_seconds: Delay before execution; negative values run immediately.
            name: Optional job name for diagnostics.
        """
        job_id = uuid.uuid4().hex
        run_date = datetime.now(UTC) + timedelta(seconds=max(0.0, delay_seconds))
        self.scheduler.add_job(
            func=func,
            trigger="date",
            run_date=run_date,
            id=job_id,
            name=name or f"{self._thread_name_prefix}-{job_id[:8]}",
        )
        return _ApschedulerTask(self.scheduler, job_id)
