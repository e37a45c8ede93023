"""
Shared fixtures for libs/vault_config tests.

ManualTaskScheduler replaces the APScheduler-backed TaskScheduler with a
deterministic fake: tasks run only when the test advances the fake clock, on
the test's own thread.
"""

from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest

from libs.vault_config.lease import Lease
from libs.vault_config.operations import VaultLeaseOperations, VaultTokenOperations
from libs.vault_config.response import VaultSecrets


class ManualTask:
    """Handle returned by ManualTaskScheduler.schedule()."""

    def __init__(self, func: Callable[[], None], due: float, name: str | None) -> None:
        self.func = func
        self.due = due
        self.name = name
        self.ran = False
        self.canceled = False

    def cancel(self) -> bool:
        if self.ran or self.canceled:
            return False
        self.canceled = True
        return True

    @property
    def pending(self) -> bool:
        return not self.ran and not self.canceled


class ManualTaskScheduler:
    """Fake timer service with a manually advanced clock."""

    def __init__(self) -> None:
        self.now = 0.0
        self.tasks: list[ManualTask] = []
        self.started = False
        self.stopped = False

    def clock(self) -> float:
        return self.now

    def start(self) -> None:
        self.started = True

    def shutdown(self, wait: bool = False) -> None:
        self.stopped = True

    def schedule(
        self, func: Callable[[], None], delay_seconds: float, name: str | None = None
    ) -> ManualTask:
        task = ManualTask(func, self.now + max(0.0, delay_seconds), name)
        self.tasks.append(task)
        return task

    @property
    def pending(self) -> list[ManualTask]:
        return [task for task in self.tasks if task.pending]

    def next_delay(self) -> float | None:
        """Seconds until the earliest pending task fires, or None."""
        pending = self.pending
        if not pending:
            return None
        return min(task.due for task in pending) - self.now

    def run_task(self, task: ManualTask) -> None:
        """Run one task now, even if canceled (simulates a task that already started)."""
        task.ran = True
        task.func()

    def advance(self, seconds: float) -> int:
        """
        Move the clock forward, running every task that becomes due in due order.

        Tasks scheduled by running tasks are picked up if they fall due before
        the target time. Returns the number of tasks run.
        """
        target = self.now + seconds
        ran = 0
        while True:
            due = [task for task in self.pending if task.due <= target]
            if not due:
                break
            task = min(due, key=lambda t: t.due)
            self.now = max(self.now, task.due)
            self.run_task(task)
            ran += 1
        self.now = target
        return ran


@pytest.fixture(autouse=True)
def fast_retry_sleep(monkeypatch):
    """Eliminate retry backoff delays in tests to keep the suite fast."""
    monkeypatch.setattr("tenacity.nap.sleep", lambda *args, **kwargs: None)
    # Decorated methods captured the sleep function when they were defined
    for method in (
        VaultLeaseOperations._fetch_with_retry,
        VaultLeaseOperations._renew_with_retry,
        VaultLeaseOperations._revoke_with_retry,
        VaultTokenOperations._renew_token_with_retry,
    ):
        monkeypatch.setattr(method.retry, "sleep", lambda *args, **kwargs: None)


@pytest.fixture()
def task_scheduler() -> ManualTaskScheduler:
    return ManualTaskScheduler()


@pytest.fixture()
def operations() -> MagicMock:
    """Mock lease operations (fetch_initial / renew / revoke)."""
    return MagicMock(spec=VaultLeaseOperations)


@pytest.fixture()
def make_secrets() -> Callable[..., VaultSecrets]:
    """Factory for VaultSecrets carrying a lease."""

    def _make(
        lease_id: str = "database/creds/app/1",
        lease_duration: int = 3600,
        renewable: bool = True,
        data: dict[str, Any] | None = None,
    ) -> VaultSecrets:
        return VaultSecrets(
            data=data if data is not None else {"username": "v-app-1", "password": "pw-1"},
            lease_id=lease_id,
            lease_duration=lease_duration,
            renewable=renewable,
        )

    return _make


@pytest.fixture()
def make_lease() -> Callable[..., Lease]:
    def _make(
        lease_id: str = "database/creds/app/1", lease_duration: int = 3600, renewable: bool = True
    ) -> Lease:
        return Lease.of(lease_id, lease_duration, renewable)

    return _make
