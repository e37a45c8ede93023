"""
Tests for libs/vault_config/scheduler.py - per-lineage lease renewal.

Test Coverage:
    - Renewal delay computation (floor and normal case)
    - Supersede: scheduling a new lease cancels the pending task; a stale task is a no-op
    - Renew result handling: reschedule, dormant on empty lease, non-renewable leases
    - At most one live renewal per lineage under concurrent firing
    - disable_schedule_renewal idempotence
    - Error handling: error handler, drop/retain strategies, bounded retries
    - End-to-end lineage: renew, renew, dormant

Test Organization:
    - TestRenewalDelay
    - TestScheduleRenewal
    - TestRenewalExecution
    - TestConcurrency
    - TestDisable
    - TestRenewalErrors
    - TestEndToEnd
"""

import threading
import time
from unittest.mock import MagicMock

import pytest
from hvac.exceptions import VaultDown

from libs.vault_config.exceptions import LeaseRenewalError
from libs.vault_config.lease import Lease
from libs.vault_config.scheduler import MIN_RETRY_DELAY_SECONDS, LeaseRenewalScheduler
from libs.vault_config.strategy import LeaseStrategy


def _io_failure(lease: Lease) -> LeaseRenewalError:
    error = LeaseRenewalError(lease.lease_id, "Vault server unreachable")
    error.__cause__ = VaultDown("connection refused")
    return error


@pytest.fixture()
def renewal(task_scheduler):
    return LeaseRenewalScheduler(task_scheduler, clock=task_scheduler.clock, name="database/creds/app")


class TestRenewalDelay:
    @pytest.mark.unit()
    def test_delay_floor(self) -> None:
        """A lease shorter than the threshold renews after min_renewal, never a negative delay."""
        assert LeaseRenewalScheduler.get_renewal_seconds(Lease.of("a", 5, True), 10, 60) == 10

    @pytest.mark.unit()
    def test_delay_normal_case(self) -> None:
        assert LeaseRenewalScheduler.get_renewal_seconds(Lease.of("a", 3600, True), 10, 60) == 3540

    @pytest.mark.unit()
    def test_is_lease_renewable(self) -> None:
        assert LeaseRenewalScheduler.is_lease_renewable(Lease.of("a", 60, True)) is True
        assert LeaseRenewalScheduler.is_lease_renewable(Lease.of("a", 60, False)) is False
        assert LeaseRenewalScheduler.is_lease_renewable(None) is False


class TestScheduleRenewal:
    @pytest.mark.unit()
    def test_schedule_installs_one_task(self, renewal, task_scheduler, make_lease) -> None:
        lease = make_lease(lease_duration=3600)

        renewal.schedule_renewal(MagicMock(), lease, 10, 60)

        assert renewal.current_lease is lease
        assert renewal.pending_count == 1
        assert [task.due for task in task_scheduler.pending] == [3540]

    @pytest.mark.unit()
    def test_supersede_cancels_previous_task(self, renewal, task_scheduler, make_lease) -> None:
        """Scheduling lease B while A is pending cancels A's task."""
        renew = MagicMock()
        lease_a = make_lease("lease-a")
        lease_b = make_lease("lease-b")

        renewal.schedule_renewal(renew, lease_a, 10, 60)
        task_a = task_scheduler.tasks[0]
        renewal.schedule_renewal(renew, lease_b, 10, 60)

        assert task_a.canceled is True
        assert renewal.current_lease is lease_b
        assert renewal.pending_count == 1
        assert len(task_scheduler.pending) == 1

    @pytest.mark.unit()
    def test_stale_task_is_noop(self, renewal, task_scheduler, make_lease) -> None:
        """A superseded task that fires anyway (benign race) does not call renew."""
        renew = MagicMock()
        lease_a = make_lease("lease-a")
        lease_b = make_lease("lease-b")

        renewal.schedule_renewal(renew, lease_a, 10, 60)
        task_a = task_scheduler.tasks[0]
        renewal.schedule_renewal(renew, lease_b, 10, 60)
        task_scheduler.run_task(task_a)

        renew.assert_not_called()
        assert renewal.current_lease is lease_b

    @pytest.mark.unit()
    def test_equal_but_distinct_lease_supersedes(self, renewal, task_scheduler) -> None:
        """Staleness is by identity: an equal lease object still supersedes."""
        renew = MagicMock()
        first = Lease.of("same", 3600, True)
        second = Lease.of("same", 3600, True)

        renewal.schedule_renewal(renew, first, 10, 60)
        stale_task = task_scheduler.tasks[0]
        renewal.schedule_renewal(renew, second, 10, 60)
        task_scheduler.run_task(stale_task)

        renew.assert_not_called()
        assert renewal.current_lease is second


class TestRenewalExecution:
    @pytest.mark.unit()
    def test_renewed_lease_is_rescheduled(self, renewal, task_scheduler, make_lease) -> None:
        lease = make_lease("lease-1", 100)
        renewed = make_lease("lease-2", 100)
        renew = MagicMock(return_value=renewed)

        renewal.schedule_renewal(renew, lease, 5, 20)
        task_scheduler.advance(80)

        renew.assert_called_once_with(lease)
        assert renewal.current_lease is renewed
        assert renewal.pending_count == 1
        assert task_scheduler.next_delay() == 80

    @pytest.mark.unit()
    def test_none_result_makes_lineage_dormant(self, renewal, task_scheduler, make_lease) -> None:
        renew = MagicMock(return_value=None)

        renewal.schedule_renewal(renew, make_lease(lease_duration=100), 5, 20)
        task_scheduler.advance(80)

        assert renewal.current_lease is None
        assert renewal.pending_count == 0
        assert task_scheduler.pending == []

    @pytest.mark.unit()
    def test_empty_lease_id_stops_scheduling(self, renewal, task_scheduler, make_lease) -> None:
        renew = MagicMock(return_value=Lease("", 0, False))

        renewal.schedule_renewal(renew, make_lease(lease_duration=100), 5, 20)
        task_scheduler.advance(80)

        assert renewal.current_lease is None
        assert task_scheduler.pending == []

    @pytest.mark.unit()
    def test_non_renewable_result_is_not_rescheduled(self, renewal, task_scheduler, make_lease) -> None:
        renewed = make_lease("lease-2", 100, renewable=False)
        renew = MagicMock(return_value=renewed)

        renewal.schedule_renewal(renew, make_lease(lease_duration=100), 5, 20)
        task_scheduler.advance(80)

        assert renewal.current_lease is renewed
        assert task_scheduler.pending == []

    @pytest.mark.unit()
    def test_should_schedule_override(self, task_scheduler, make_lease) -> None:
        """A custom predicate (rotation) schedules non-renewable leases too."""
        renewal = LeaseRenewalScheduler(
            task_scheduler,
            should_schedule=lambda lease: lease.lease_duration > 0,
            clock=task_scheduler.clock,
        )
        rotated = make_lease("lease-2", 100, renewable=False)
        renew = MagicMock(return_value=rotated)

        renewal.schedule_renewal(renew, make_lease(lease_duration=100, renewable=False), 5, 20)
        task_scheduler.advance(80)

        assert renewal.current_lease is rotated
        assert len(task_scheduler.pending) == 1

    @pytest.mark.unit()
    def test_many_renewals_do_not_grow_stack(self, renewal, task_scheduler) -> None:
        """Rescheduling installs a new task each time; no recursion."""
        counter = iter(range(1, 1_000))

        def renew(lease: Lease) -> Lease:
            return Lease.of(f"lease-{next(counter)}", 20, True)

        renewal.schedule_renewal(renew, Lease.of("lease-0", 20, True), 1, 10)
        ran = task_scheduler.advance(10 * 500)

        assert ran == 500
        assert renewal.pending_count == 1


class TestConcurrency:
    @pytest.mark.unit()
    def test_at_most_one_live_renewal_per_lineage(self, renewal, task_scheduler, make_lease) -> None:
        """Two tasks for the current lease firing together call renew once."""
        lease = make_lease("lease-1", 100)
        in_renew = threading.Event()
        release = threading.Event()
        counter_lock = threading.Lock()
        state = {"calls": 0, "active": 0, "max_active": 0}

        def renew(current: Lease) -> Lease:
            with counter_lock:
                state["calls"] += 1
                state["active"] += 1
                state["max_active"] = max(state["max_active"], state["active"])
            in_renew.set()
            release.wait(5)
            with counter_lock:
                state["active"] -= 1
            return Lease.of("lease-2", 100, True)

        # Scheduling the same lease twice leaves two tasks for one current lease
        renewal.schedule_renewal(renew, lease, 5, 20)
        renewal.schedule_renewal(renew, lease, 5, 20)
        first, second = task_scheduler.tasks[0], task_scheduler.tasks[1]

        t1 = threading.Thread(target=task_scheduler.run_task, args=(first,))
        t2 = threading.Thread(target=task_scheduler.run_task, args=(second,))
        t1.start()
        assert in_renew.wait(5)
        t2.start()
        time.sleep(0.05)
        release.set()
        t1.join(5)
        t2.join(5)

        assert state["calls"] == 1
        assert state["max_active"] == 1
        assert renewal.current_lease.lease_id == "lease-2"

    @pytest.mark.unit()
    def test_schedule_from_renew_callback(self, renewal, task_scheduler, make_lease) -> None:
        """schedule_renewal may be called from inside a renewal without deadlock."""
        external = make_lease("external", 100)

        def renew(lease: Lease) -> Lease:
            renewal.schedule_renewal(MagicMock(), external, 5, 20)
            return make_lease("lease-2", 100)

        renewal.schedule_renewal(renew, make_lease("lease-1", 100), 5, 20)
        task_scheduler.advance(80)

        # The renewal result lost the compare-and-set against the external schedule
        assert renewal.current_lease is external


class TestDisable:
    @pytest.mark.unit()
    def test_disable_cancels_pending(self, renewal, task_scheduler, make_lease) -> None:
        renewal.schedule_renewal(MagicMock(), make_lease(), 10, 60)

        renewal.disable_schedule_renewal()

        assert renewal.current_lease is None
        assert renewal.pending_count == 0
        assert task_scheduler.pending == []

    @pytest.mark.unit()
    def test_disable_twice_is_safe(self, renewal, make_lease) -> None:
        renewal.schedule_renewal(MagicMock(), make_lease(), 10, 60)

        renewal.disable_schedule_renewal()
        renewal.disable_schedule_renewal()

        assert renewal.pending_count == 0

    @pytest.mark.unit()
    def test_disable_during_inflight_renewal(self, renewal, task_scheduler, make_lease) -> None:
        """disable during renew does not block; the renewal result is discarded."""
        in_renew = threading.Event()
        release = threading.Event()

        def renew(lease: Lease) -> Lease:
            in_renew.set()
            release.wait(5)
            return make_lease("lease-2", 100)

        renewal.schedule_renewal(renew, make_lease("lease-1", 100), 5, 20)
        task = task_scheduler.tasks[0]
        worker = threading.Thread(target=task_scheduler.run_task, args=(task,))
        worker.start()
        assert in_renew.wait(5)

        renewal.disable_schedule_renewal()
        release.set()
        worker.join(5)

        assert renewal.current_lease is None
        assert renewal.pending_count == 0
        assert task_scheduler.pending == []

    @pytest.mark.unit()
    def test_task_after_disable_is_noop(self, renewal, task_scheduler, make_lease) -> None:
        renew = MagicMock()
        renewal.schedule_renewal(renew, make_lease(), 10, 60)
        task = task_scheduler.tasks[0]

        renewal.disable_schedule_renewal()
        task_scheduler.run_task(task)

        renew.assert_not_called()

    @pytest.mark.unit()
    def test_fired_canceled_task_keeps_live_task_cancellable(self, renewal, task_scheduler, make_lease) -> None:
        """A canceled task that fires anyway must not remove the live task's entry."""
        lease = make_lease(lease_duration=100)
        renewal.schedule_renewal(MagicMock(return_value=None), lease, 5, 20)
        canceled = task_scheduler.tasks[0]
        renewal.schedule_renewal(MagicMock(return_value=None), lease, 5, 20)
        live = task_scheduler.tasks[1]
        assert canceled.canceled is True

        task_scheduler.run_task(canceled)

        assert renewal.pending_count == 1
        renewal.disable_schedule_renewal()
        assert live.canceled is True
        assert task_scheduler.pending == []


class TestRenewalErrors:
    @pytest.mark.unit()
    def test_error_handler_called_and_lease_dropped(self, task_scheduler, make_lease) -> None:
        handler = MagicMock()
        renewal = LeaseRenewalScheduler(
            task_scheduler, error_handler=handler, clock=task_scheduler.clock
        )
        lease = make_lease(lease_duration=100)
        error = LeaseRenewalError(lease.lease_id, "permission denied")

        renewal.schedule_renewal(MagicMock(side_effect=error), lease, 5, 20)
        task_scheduler.advance(80)

        handler.assert_called_once_with(lease, error)
        assert renewal.current_lease is None
        assert task_scheduler.pending == []

    @pytest.mark.unit()
    def test_failing_error_handler_is_contained(self, task_scheduler, make_lease) -> None:
        renewal = LeaseRenewalScheduler(
            task_scheduler,
            error_handler=MagicMock(side_effect=RuntimeError("listener bug")),
            clock=task_scheduler.clock,
        )

        renewal.schedule_renewal(MagicMock(side_effect=ValueError("boom")), make_lease(), 5, 20)
        task_scheduler.advance(3600)

        assert renewal.current_lease is None

    @pytest.mark.unit()
    def test_retain_retries_same_lease_after_min_renewal(self, task_scheduler, make_lease) -> None:
        lease = make_lease(lease_duration=100)
        renewed = make_lease("lease-2", 100)
        renew = MagicMock(side_effect=[_io_failure(lease), renewed])
        renewal = LeaseRenewalScheduler(
            task_scheduler,
            lease_strategy=LeaseStrategy.retain_on_io_error(),
            clock=task_scheduler.clock,
        )

        renewal.schedule_renewal(renew, lease, 5, 20)
        task_scheduler.advance(80)

        assert renewal.current_lease is lease
        assert task_scheduler.next_delay() == 5

        task_scheduler.advance(5)

        assert renew.call_count == 2
        assert renew.call_args_list[1].args[0] is lease
        assert renewal.current_lease is renewed

    @pytest.mark.unit()
    def test_retain_stops_before_expiry(self, task_scheduler, make_lease) -> None:
        """Retries stop once the next retry would land after the lease expired."""
        lease = make_lease(lease_duration=100)
        def always_fail(current: Lease) -> Lease:
            raise _io_failure(current)

        renew = MagicMock(side_effect=always_fail)
        renewal = LeaseRenewalScheduler(
            task_scheduler,
            lease_strategy=LeaseStrategy.retain_on_error(),
            clock=task_scheduler.clock,
        )

        renewal.schedule_renewal(renew, lease, 5, 20)
        task_scheduler.advance(1000)

        # Attempts at t=80, 85, 90, 95; at t=95 elapsed + 5 >= 100 drops the lease
        assert renew.call_count == 4
        assert renewal.current_lease is None
        assert task_scheduler.pending == []

    @pytest.mark.unit()
    def test_retain_with_zero_min_renewal_waits_between_retries(self, task_scheduler, make_lease) -> None:
        lease = make_lease(lease_duration=10)

        def always_fail(current: Lease) -> Lease:
            raise _io_failure(current)

        renew = MagicMock(side_effect=always_fail)
        renewal = LeaseRenewalScheduler(
            task_scheduler,
            lease_strategy=LeaseStrategy.retain_on_error(),
            clock=task_scheduler.clock,
        )

        renewal.schedule_renewal(renew, lease, 0, 5)
        task_scheduler.advance(5)

        assert renew.call_count == 1
        assert task_scheduler.next_delay() == MIN_RETRY_DELAY_SECONDS

        task_scheduler.advance(1000)

        # Attempts at t=5, 6, 7, 8, 9; at t=9 elapsed + 1 >= 10 drops the lease
        assert renew.call_count == 5
        assert renewal.current_lease is None

    @pytest.mark.unit()
    def test_retain_on_io_error_drops_other_errors(self, task_scheduler, make_lease) -> None:
        renewal = LeaseRenewalScheduler(
            task_scheduler,
            lease_strategy=LeaseStrategy.retain_on_io_error(),
            clock=task_scheduler.clock,
        )

        renewal.schedule_renewal(
            MagicMock(side_effect=LeaseRenewalError("lease-1", "permission denied")),
            make_lease(lease_duration=100),
            5,
            20,
        )
        task_scheduler.advance(80)

        assert renewal.current_lease is None
        assert task_scheduler.pending == []


class TestEndToEnd:
    @pytest.mark.unit()
    def test_lineage_renews_then_goes_dormant(self, renewal, task_scheduler) -> None:
        """
        abc (100s) → delay 80 → abc-2 (100s) → delay 80 → empty lease → dormant.
        """
        first = Lease.of("abc", 100, True)
        second = Lease.of("abc-2", 100, True)
        renew = MagicMock(side_effect=[second, Lease("", 0, False)])

        renewal.schedule_renewal(renew, first, 5, 20)
        assert task_scheduler.next_delay() == 80

        task_scheduler.advance(80)
        assert renewal.current_lease is second
        assert task_scheduler.next_delay() == 80

        task_scheduler.advance(80)
        assert renew.call_count == 2
        assert renewal.current_lease is None
        assert task_scheduler.pending == []
