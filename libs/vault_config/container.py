"""
Secret lease container: keeps a set of requested secrets leased and fresh.

The container performs the initial fetch of each requested secret, hands its
lease to a per-secret LeaseRenewalScheduler, publishes lease events to
listeners, and revokes leases at shutdown.

Architecture:
    SecretLeaseContainer
    ├── one LeaseRenewalScheduler per RequestedSecret (one lineage each)
    ├── LeaseOperations (fetch_initial / renew / revoke, usually VaultLeaseOperations)
    ├── TaskScheduler (shared APScheduler thread pool)
    └── lease listeners + error listeners

Error Propagation:
    - Initial fetch errors are logged and published to error listeners;
      bind_secret_source(fail_fast=True) turns them into exceptions
    - Renewal errors are published to error listeners; the LeaseStrategy
      decides whether the lease is dropped or retained
    - Revocation errors are logged and published, never raised

Example:
    >>> container = SecretLeaseContainer(VaultLeaseOperations(client), TaskScheduler())
    >>> container.add_lease_listener(on_lease_event)
    >>> container.start()
    >>> container.add_requested_secret(RequestedSecret.renewable("database/creds/app"))
    >>> ...
    >>> container.destroy()  # disable renewals, revoke leases
"""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from types import TracebackType
from typing import Protocol

from libs.vault_config.events import (
    AfterSecretLeaseRenewedEvent,
    AfterSecretLeaseRevocationEvent,
    BeforeSecretLeaseRevocationEvent,
    LeaseErrorListener,
    LeaseListener,
    SecretLeaseCreatedEvent,
    SecretLeaseErrorEvent,
    SecretLeaseEvent,
    SecretLeaseExpiredEvent,
    SecretLeaseRotatedEvent,
)
from libs.vault_config.exceptions import (
    InitialFetchError,
    LeaseRenewalError,
    LeaseRevocationError,
    VaultConfigError,
)
from libs.vault_config.lease import Lease, LeaseMode, RequestedSecret
from libs.vault_config.metrics import vault_lease_renewals_total, vault_lease_revocations_total
from libs.vault_config.operations import LeaseOperations
from libs.vault_config.scheduler import LeaseRenewalScheduler
from libs.vault_config.strategy import LeaseStrategy
from libs.vault_config.task_scheduler import TaskSchedulerProtocol

logger = logging.getLogger(__name__)


class _Destroyable(Protocol):
    def destroy(self) -> None: ...


class SecretLeaseContainer:
    """
    Manages the lease lifecycle of requested secrets.

    Thread Safety:
        The container lock only guards registration and listener lists; each
        secret's renewal state lives in its own LeaseRenewalScheduler, so
        unrelated secrets renew without contending.
        A reentrant lifecycle lock orders lease publication against destroy().
    """

    def __init__(
        self,
        operations: LeaseOperations,
        task_scheduler: TaskSchedulerProtocol,
        *,
        min_renewal_seconds: int = 10,
        expiry_threshold_seconds: int = 60,
        lease_strategy: LeaseStrategy | None = None,
        session_manager: _Destroyable | None = None,
        owns_scheduler: bool = False,
        revocation_workers: int = 4,
        renewal_enabled: bool = True,
        fail_fast: bool = False,
    ) -> None:
        """
        Args:
            operations: Fetch/renew/revoke capability
            task_scheduler: Timer service shared by all renewals
            min_renewal_seconds: Lower bound for any renewal delay (prevents renewal storms)
            expiry_threshold_seconds: Renew this many seconds before the lease expires
            lease_strategy: Policy after a renewal error (default: drop on error)
            session_manager: Destroyed after leases are revoked (revokes the login token)
            owns_scheduler: Shut the task scheduler down on destroy()
            revocation_workers: Max concurrent revocations at shutdown
            renewal_enabled: Schedule renewal/rotation of fetched leases. When False,
                secrets are fetched once and still revoked at shutdown.
            fail_fast: Default for bind_secret_source(fail_fast=...): raise when
                the initial fetch fails
        """
        if min_renewal_seconds < 0:
            raise ValueError(f"min_renewal_seconds must be >= 0, got {min_renewal_seconds}")
        if expiry_threshold_seconds < 0:
            raise ValueError(
                f"expiry_threshold_seconds must be >= 0, got {expiry_threshold_seconds}"
            )

        self._operations = operations
        self._task_scheduler = task_scheduler
        self.min_renewal_seconds = min_renewal_seconds
        self.expiry_threshold_seconds = expiry_threshold_seconds
        self.lease_strategy = lease_strategy or LeaseStrategy.drop_on_error()
        self._session_manager = session_manager
        self._owns_scheduler = owns_scheduler
        self._revocation_workers = max(1, revocation_workers)
        self.renewal_enabled = renewal_enabled
        self.fail_fast = fail_fast

        self._lock = threading.Lock()
        # Orders lease publication against destroy(): a renewal either publishes
        # before the shutdown snapshot or sees the container destroyed
        self._lifecycle_lock = threading.RLock()
        self._secrets: list[RequestedSecret] = []
        self._renewals: dict[RequestedSecret, LeaseRenewalScheduler] = {}
        self._leases: dict[RequestedSecret, Lease | None] = {}
        self._lease_listeners: list[LeaseListener] = []
        self._error_listeners: list[LeaseErrorListener] = []
        self._started = False
        self._destroyed = False

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_lease_listener(self, listener: LeaseListener) -> None:
        with self._lock:
            self._lease_listeners.append(listener)

    def remove_lease_listener(self, listener: LeaseListener) -> None:
        with self._lock:
            if listener in self._lease_listeners:
                self._lease_listeners.remove(listener)

    def add_error_listener(self, listener: LeaseErrorListener) -> None:
        with self._lock:
            self._error_listeners.append(listener)

    def remove_error_listener(self, listener: LeaseErrorListener) -> None:
        with self._lock:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

    # ------------------------------------------------------------------
    # Registration and lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._started

    @property
    def requested_secrets(self) -> list[RequestedSecret]:
        with self._lock:
            return list(self._secrets)

    def get_current_lease(self, secret: RequestedSecret) -> Lease | None:
        with self._lock:
            return self._leases.get(secret)

    def add_requested_secret(self, secret: RequestedSecret) -> RequestedSecret:
        """
        Register a secret. If the container is started, fetch it now (synchronously).

        Raises:
            VaultConfigError: The container was destroyed.
        """
        with self._lock:
            if self._destroyed:
                raise VaultConfigError("SecretLeaseContainer is destroyed", path=secret.path)
            if any(existing is secret for existing in self._secrets):
                return secret
            self._secrets.append(secret)
            started = self._started

        if started:
            self._start_secret(secret)
        return secret

    def start(self) -> None:
        """Start the task scheduler and fetch every registered secret (idempotent)."""
        with self._lock:
            if self._destroyed:
                raise VaultConfigError("SecretLeaseContainer is destroyed")
            if self._started:
                return
            self._started = True
            pending = [secret for secret in self._secrets if secret not in self._renewals]

        self._task_scheduler.start()

        logger.info("SecretLeaseContainer started", extra={"secret_count": len(pending)})
        for secret in pending:
            self._start_secret(secret)

    def destroy(self) -> None:
        """
        Disable all renewals and revoke renewable leases (idempotent, never raises).

        Revocations run concurrently; a failed revocation is logged and
        published to error listeners without affecting the others.
        """
        with self._lifecycle_lock, self._lock:
            if self._destroyed:
                return
            self._destroyed = True
            items = [(secret, self._renewals.get(secret), self._leases.get(secret)) for secret in self._secrets]

        for _, renewal, _ in items:
            if renewal is not None:
                renewal.disable_schedule_renewal()

        to_revoke = [(secret, lease) for secret, _, lease in items if lease is not None and lease.renewable]
        if to_revoke:
            workers = min(len(to_revoke), self._revocation_workers)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vault-revoke") as pool:
                list(pool.map(lambda item: self._revoke(*item), to_revoke))

        if self._session_manager is not None:
            try:
                self._session_manager.destroy()
            except Exception:
                logger.exception("Session manager shutdown failed")

        if self._owns_scheduler:
            self._task_scheduler.shutdown(wait=False)

        logger.info("SecretLeaseContainer destroyed", extra={"revoked_count": len(to_revoke)})

    def __enter__(self) -> "SecretLeaseContainer":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.destroy()

    # ------------------------------------------------------------------
    # Lease handling
    # ------------------------------------------------------------------

    def _start_secret(self, secret: RequestedSecret) -> None:
        try:
            secrets = self._operations.fetch_initial(secret.path)
            lease = Lease.from_secrets(secrets)
        except Exception as e:
            error: VaultConfigError
            if isinstance(e, VaultConfigError):
                error = e
            else:
                error = InitialFetchError(secret.path, f"{type(e).__name__}: {e}")
                error.__cause__ = e
            logger.error(
                "Unable to read secret from Vault",
                extra={
                    "secret_path": secret.path,
                    "error": str(error),
                    "error_type": type(e).__name__,
                },
                exc_info=True,
            )
            self._publish_error(SecretLeaseErrorEvent(secret, None, error), error)
            return

        renewal = LeaseRenewalScheduler(
            self._task_scheduler,
            lease_strategy=self.lease_strategy,
            error_handler=partial(self._on_renewal_error, secret),
            should_schedule=self._should_schedule_for(secret),
            name=secret.path,
        )
        with self._lock:
            self._renewals[secret] = renewal
            self._leases[secret] = lease

        logger.info(
            "Secret loaded from Vault",
            extra={
                "secret_path": secret.path,
                "lease_id": lease.lease_id if lease else None,
                "lease_mode": secret.mode.value,
            },
        )
        self._publish(SecretLeaseCreatedEvent(secret, lease, data=dict(secrets.data)))

        if self.renewal_enabled and lease is not None and self._should_schedule_for(secret)(lease):
            logger.debug(
                "Lease qualified for renewal",
                extra={"secret_path": secret.path, "lease_id": lease.lease_id},
            )
            renewal.schedule_renewal(
                self._renew_operation_for(secret),
                lease,
                self.min_renewal_seconds,
                self.expiry_threshold_seconds,
            )

    def _should_schedule_for(self, secret: RequestedSecret) -> Callable[[Lease], bool]:
        if secret.mode is LeaseMode.ROTATE:
            return lambda lease: lease.lease_duration > 0
        return LeaseRenewalScheduler.is_lease_renewable

    def _renew_operation_for(self, secret: RequestedSecret) -> Callable[[Lease], Lease | None]:
        if secret.mode is LeaseMode.ROTATE:
            return partial(self._rotate, secret)
        return partial(self._renew, secret)

    def _renew(self, secret: RequestedSecret, lease: Lease) -> Lease | None:
        try:
            new_lease = self._operations.renew(lease)
        except LeaseRenewalError:
            raise
        except Exception as e:
            raise LeaseRenewalError(lease.lease_id, f"{type(e).__name__}: {e}", path=secret.path) from e

        with self._lifecycle_lock:
            if self._destroyed:
                # destroy() already revoked this lease id
                logger.info(
                    "Container destroyed during renewal, discarding result",
                    extra={"secret_path": secret.path, "lease_id": lease.lease_id},
                )
                return None

            with self._lock:
                self._leases[secret] = new_lease

            if new_lease is None:
                self._publish(SecretLeaseExpiredEvent(secret, lease))
                return None

            logger.info(
                "Lease renewed",
                extra={
                    "secret_path": secret.path,
                    "lease_id": new_lease.lease_id,
                    "lease_duration": new_lease.lease_duration,
                },
            )
            self._publish(AfterSecretLeaseRenewedEvent(secret, new_lease))
        return new_lease

    def _rotate(self, secret: RequestedSecret, lease: Lease) -> Lease | None:
        try:
            secrets = self._operations.fetch_initial(secret.path)
            new_lease = Lease.from_secrets(secrets)
        except Exception as e:
            raise LeaseRenewalError(
                lease.lease_id, f"rotation failed: {type(e).__name__}: {e}", path=secret.path
            ) from e

        with self._lifecycle_lock:
            destroyed = self._destroyed
            if not destroyed:
                with self._lock:
                    self._leases[secret] = new_lease

                logger.info(
                    "Secret rotated",
                    extra={
                        "secret_path": secret.path,
                        "previous_lease_id": lease.lease_id,
                        "lease_id": new_lease.lease_id if new_lease else None,
                    },
                )
                vault_lease_renewals_total.labels(outcome="rotated").inc()
                self._publish(
                    SecretLeaseRotatedEvent(
                        secret, new_lease, data=dict(secrets.data), previous_lease=lease
                    )
                )

        if destroyed:
            self._revoke_orphan(secret, new_lease)
            return None
        return new_lease

    def _revoke_orphan(self, secret: RequestedSecret, lease: Lease | None) -> None:
        """Revoke credentials fetched after destroy(); nobody will ever read them."""
        if lease is None or not lease.lease_id:
            return
        logger.info(
            "Container destroyed during rotation, revoking new lease",
            extra={"secret_path": secret.path, "lease_id": lease.lease_id},
        )
        try:
            self._operations.revoke(lease)
        except Exception as e:
            logger.warning(
                "Cannot revoke lease",
                extra={
                    "secret_path": secret.path,
                    "lease_id": lease.lease_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            vault_lease_revocations_total.labels(outcome="error").inc()
            return
        vault_lease_revocations_total.labels(outcome="revoked").inc()

    def _on_renewal_error(self, secret: RequestedSecret, lease: Lease, error: Exception) -> None:
        self._publish_error(SecretLeaseErrorEvent(secret, lease, error), error)

    def _revoke(self, secret: RequestedSecret, lease: Lease) -> None:
        self._publish(BeforeSecretLeaseRevocationEvent(secret, lease))
        try:
            self._operations.revoke(lease)
        except Exception as e:
            error = (
                e
                if isinstance(e, LeaseRevocationError)
                else LeaseRevocationError(lease.lease_id, f"{type(e).__name__}: {e}", path=secret.path)
            )
            logger.warning(
                "Cannot revoke lease",
                extra={
                    "secret_path": secret.path,
                    "lease_id": lease.lease_id,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            vault_lease_revocations_total.labels(outcome="error").inc()
            self._publish_error(SecretLeaseErrorEvent(secret, lease, error), error)
            return

        with self._lock:
            if self._leases.get(secret) is lease:
                self._leases[secret] = None
        logger.info(
            "Lease revoked", extra={"secret_path": secret.path, "lease_id": lease.lease_id}
        )
        vault_lease_revocations_total.labels(outcome="revoked").inc()
        self._publish(AfterSecretLeaseRevocationEvent(secret, lease))

    # ------------------------------------------------------------------
    # Event publication
    # ------------------------------------------------------------------

    def _publish(self, event: SecretLeaseEvent) -> None:
        with self._lock:
            listeners = list(self._lease_listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Lease listener failed",
                    extra={"secret_path": event.source.path, "event": type(event).__name__},
                )

    def _publish_error(self, event: SecretLeaseEvent, error: BaseException) -> None:
        with self._lock:
            listeners = list(self._error_listeners)
        for listener in listeners:
            try:
                listener(event, error)
            except Exception:
                logger.exception(
                    "Lease error listener failed", extra={"secret_path": event.source.path}
                )
        # Lease listeners also see errors (sources track ERRORED state)
        self._publish(event)
