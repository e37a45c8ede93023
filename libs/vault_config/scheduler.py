"""
Lease renewal scheduler.

A LeaseRenewalScheduler owns one lineage: the sequence of leases produced by
repeatedly renewing one requested secret. It keeps at most one pending
one-shot task per lineage and a "current lease" pointer. Every task checks on
firing that the lease it was scheduled for is still the current one (by
identity); if a newer lease superseded it, the task does nothing.

Lifecycle of one lineage:

    schedule_renewal(lease)          current = lease, task(delay) installed
        └─ task fires                stale? → no-op
            └─ renew_lease(lease)    → new lease: CAS current, schedule_renewal(new lease)
                                     → None: lineage dormant
                                     → error: LeaseStrategy drops or retains

Rescheduling happens by installing a fresh task, never by recursion, so a
lineage renewed thousands of times does not grow the call stack.

Thread Safety:
    Each instance has its own locks; unrelated lineages never contend. The
    state lock guards the current pointer and the task map. The renewal lock
    serialises live renewals of this lineage, so two tasks of one lineage never
    call renew_lease at the same time. disable_schedule_renewal() only takes
    the state lock and cannot deadlock with an in-flight renewal.
"""

import logging
import threading
import time
from collections.abc import Callable
from functools import partial

from libs.vault_config.lease import Lease
from libs.vault_config.metrics import vault_lease_renewals_total
from libs.vault_config.strategy import LeaseStrategy
from libs.vault_config.task_scheduler import ScheduledTask, TaskSchedulerProtocol

logger = logging.getLogger(__name__)

RenewLease = Callable[[Lease], Lease | None]
"""Renews a lease; returns the new lease, or None to stop renewing."""

RenewalErrorHandler = Callable[[Lease, Exception], None]

MIN_RETRY_DELAY_SECONDS = 1
"""Floor for the retry delay of a retained lease, so retries never spin."""


class LeaseRenewalScheduler:
    """
    Schedules one-shot renewals for a single lease lineage.

    Example:
        >>> renewal = LeaseRenewalScheduler(task_scheduler, name="database/creds/app")
        >>> renewal.schedule_renewal(operations.renew, lease, 10, 60)
        >>> ...
        >>> renewal.disable_schedule_renewal()  # at shutdown
    """

    def __init__(
        self,
        task_scheduler: TaskSchedulerProtocol,
        lease_strategy: LeaseStrategy | None = None,
        error_handler: RenewalErrorHandler | None = None,
        should_schedule: Callable[[Lease], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
        name: str | None = None,
    ) -> None:
        """
        Args:
            task_scheduler: Timer service running tasks on pool threads
            lease_strategy: Drop/retain policy after a failed renewal (default: drop)
            error_handler: Receives (lease, error) for every failed renewal
            should_schedule: Whether a newly obtained lease gets its own renewal
                (default: the lease is renewable)
            clock: Monotonic clock in seconds, used to bound retries of retained leases
            name: Lineage name for logs (usually the secret path)
        """
        self._task_scheduler = task_scheduler
        self._strategy = lease_strategy or LeaseStrategy.drop_on_error()
        self._error_handler = error_handler
        self._should_schedule = should_schedule or self.is_lease_renewable
        self._clock = clock
        self._name = name

        self._state_lock = threading.Lock()
        self._renewal_lock = threading.Lock()
        self._current: Lease | None = None
        self._installed_at: float | None = None
        # id(lease) -> (lease, task, ticket); holding the lease keeps its id stable.
        # The ticket identifies the task that owns the entry.
        self._schedules: dict[int, tuple[Lease, ScheduledTask, object]] = {}

    @property
    def current_lease(self) -> Lease | None:
        with self._state_lock:
            return self._current

    @property
    def pending_count(self) -> int:
        with self._state_lock:
            return len(self._schedules)

    @staticmethod
    def is_lease_renewable(lease: Lease | None) -> bool:
        return lease is not None and lease.renewable

    @staticmethod
    def get_renewal_seconds(
        lease: Lease, min_renewal_seconds: int, expiry_threshold_seconds: int
    ) -> int:
        """
        Seconds until the lease should be renewed.

        Example:
            >>> LeaseRenewalScheduler.get_renewal_seconds(Lease.of("a", 3600, True), 10, 60)
            3540
            >>> LeaseRenewalScheduler.get_renewal_seconds(Lease.of("a", 5, True), 10, 60)
            10
        """
        return max(min_renewal_seconds, lease.lease_duration - expiry_threshold_seconds)

    def schedule_renewal(
        self,
        renew_lease: RenewLease,
        lease: Lease,
        min_renewal_seconds: int,
        expiry_threshold_seconds: int,
    ) -> None:
        """
        Schedule renewal of ``lease`` and make it the lineage's current lease.

        Any task pending for the previous current lease is canceled. Cancellation
        is best-effort: a task that is already running finds itself stale and
        does nothing.
        """
        delay = self.get_renewal_seconds(lease, min_renewal_seconds, expiry_threshold_seconds)
        logger.debug(
            "Scheduling renewal for lease",
            extra={
                "lineage": self._name,
                "lease_id": lease.lease_id,
                "lease_duration": lease.lease_duration,
                "delay_seconds": delay,
            },
        )
        self._install(renew_lease, lease, delay, min_renewal_seconds, expiry_threshold_seconds)

    def disable_schedule_renewal(self) -> None:
        """
        Cancel all pending tasks and clear the current lease (idempotent).

        A task that fires during or after this call sees that the lineage has
        no current lease and does nothing.
        """
        with self._state_lock:
            self._current = None
            self._installed_at = None
            pending = list(self._schedules.values())
            self._schedules.clear()

        for lease, task, _ in pending:
            logger.debug(
                "Canceling schedule for lease",
                extra={"lineage": self._name, "lease_id": lease.lease_id},
            )
            task.cancel()

    def _install(
        self,
        renew_lease: RenewLease,
        lease: Lease,
        delay: float,
        min_renewal_seconds: int,
        expiry_threshold_seconds: int,
    ) -> None:
        with self._state_lock:
            previous = self._current
            if previous is not lease:
                self._installed_at = self._clock()
            self._current = lease
            superseded = self._schedules.pop(id(previous), None) if previous is not None else None

        if superseded is not None:
            logger.debug(
                "Canceling previously registered schedule for lease",
                extra={"lineage": self._name, "lease_id": superseded[0].lease_id},
            )
            superseded[1].cancel()

        ticket = object()
        task = self._task_scheduler.schedule(
            partial(
                self._run_renewal,
                renew_lease,
                lease,
                ticket,
                min_renewal_seconds,
                expiry_threshold_seconds,
            ),
            delay,
            name=f"renew {lease.lease_id}",
        )

        with self._state_lock:
            if self._current is lease:
                self._schedules[id(lease)] = (lease, task, ticket)
                return
        # Disabled or superseded while the task was being installed
        task.cancel()

    def _run_renewal(
        self,
        renew_lease: RenewLease,
        lease: Lease,
        ticket: object,
        min_renewal_seconds: int,
        expiry_threshold_seconds: int,
    ) -> None:
        # Runs on a pool thread; nothing may escape into the scheduler
        try:
            self._renew_if_current(
                renew_lease, lease, ticket, min_renewal_seconds, expiry_threshold_seconds
            )
        except Exception:
            logger.exception(
                "Unexpected error in lease renewal task",
                extra={"lineage": self._name, "lease_id": lease.lease_id},
            )

    def _is_stale(self, lease: Lease, ticket: object) -> bool:
        with self._state_lock:
            entry = self._schedules.get(id(lease))
            # A canceled task that fired anyway must not drop the live task's entry
            if entry is not None and entry[0] is lease and entry[2] is ticket:
                del self._schedules[id(lease)]
            stale = self._current is not lease
        if stale:
            logger.debug(
                "Current lease has changed. Skipping renewal",
                extra={"lineage": self._name, "lease_id": lease.lease_id},
            )
            vault_lease_renewals_total.labels(outcome="stale").inc()
        return stale

    def _renew_if_current(
        self,
        renew_lease: RenewLease,
        lease: Lease,
        ticket: object,
        min_renewal_seconds: int,
        expiry_threshold_seconds: int,
    ) -> None:
        if self._is_stale(lease, ticket):
            return

        with self._renewal_lock:
            # Another task of this lineage may have renewed while we waited
            with self._state_lock:
                if self._current is not lease:
                    logger.debug(
                        "Lease superseded while waiting for renewal lock",
                        extra={"lineage": self._name, "lease_id": lease.lease_id},
                    )
                    vault_lease_renewals_total.labels(outcome="stale").inc()
                    return

            logger.debug(
                "Renewing lease", extra={"lineage": self._name, "lease_id": lease.lease_id}
            )
            try:
                new_lease = renew_lease(lease)
            except Exception as e:
                self._handle_renewal_error(
                    renew_lease, lease, e, min_renewal_seconds, expiry_threshold_seconds
                )
                return

            with self._state_lock:
                if self._current is not lease:
                    logger.debug(
                        "Lease superseded during renewal, discarding result",
                        extra={"lineage": self._name, "lease_id": lease.lease_id},
                    )
                    vault_lease_renewals_total.labels(outcome="stale").inc()
                    return

                if new_lease is None or not new_lease.lease_id:
                    self._current = None
                    self._installed_at = None
                    dormant = True
                else:
                    self._current = new_lease
                    self._installed_at = self._clock()
                    dormant = False

        if dormant:
            logger.info(
                "Lease is not renewed further",
                extra={"lineage": self._name, "lease_id": lease.lease_id},
            )
            vault_lease_renewals_total.labels(outcome="dormant").inc()
            return

        vault_lease_renewals_total.labels(outcome="renewed").inc()
        if new_lease is not None and self._should_schedule(new_lease):
            self.schedule_renewal(
                renew_lease, new_lease, min_renewal_seconds, expiry_threshold_seconds
            )

    def _handle_renewal_error(
        self,
        renew_lease: RenewLease,
        lease: Lease,
        error: Exception,
        min_renewal_seconds: int,
        expiry_threshold_seconds: int,
    ) -> None:
        logger.error(
            "Cannot renew lease",
            extra={
                "lineage": self._name,
                "lease_id": lease.lease_id,
                "error": str(error),
                "error_type": type(error).__name__,
            },
            exc_info=error,
        )
        vault_lease_renewals_total.labels(outcome="error").inc()
        self._notify_error(lease, error)

        if self._strategy.should_drop(error):
            self._drop(lease)
            return

        with self._state_lock:
            if self._current is not lease:
                return
            installed_at = self._installed_at if self._installed_at is not None else self._clock()
        elapsed = self._clock() - installed_at
        retry_delay = max(MIN_RETRY_DELAY_SECONDS, min_renewal_seconds)

        if elapsed + retry_delay >= lease.lease_duration:
            logger.warning(
                "Retained lease expires before next retry, dropping",
                extra={
                    "lineage": self._name,
                    "lease_id": lease.lease_id,
                    "elapsed_seconds": round(elapsed, 1),
                },
            )
            self._drop(lease)
            return

        logger.info(
            "Retaining lease after renewal error, retrying",
            extra={
                "lineage": self._name,
                "lease_id": lease.lease_id,
                "strategy": self._strategy.name.value,
                "delay_seconds": retry_delay,
            },
        )
        vault_lease_renewals_total.labels(outcome="retained").inc()
        self._install(renew_lease, lease, retry_delay, min_renewal_seconds, expiry_threshold_seconds)

    def _drop(self, lease: Lease) -> None:
        with self._state_lock:
            if self._current is lease:
                self._current = None
                self._installed_at = None

    def _notify_error(self, lease: Lease, error: Exception) -> None:
        if self._error_handler is None:
            return
        try:
            self._error_handler(lease, error)
        except Exception:
            logger.exception(
                "Lease error handler failed",
                extra={"lineage": self._name, "lease_id": lease.lease_id},
            )
