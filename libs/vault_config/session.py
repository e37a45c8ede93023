"""
Session token lifecycle: login on demand, refresh before expiry, revoke at shutdown.

The session manager hands out the Vault token used by every lease operation.
Readers never see a token that is about to expire: if the current token has
less than ``expiry_threshold_seconds`` left, the reader logs in synchronously.
A login that itself yields less than the threshold raises SessionError.
In the background a one-shot refresh is scheduled ``refresh_before_expiry_seconds``
before the token expires; it renews the token (renew-self) when possible and
logs in again otherwise.

Example:
    >>> session = LifecycleAwareSessionManager(
    ...     AppRoleAuthentication(client, role_id, secret_id),
    ...     task_scheduler,
    ...     token_operations=VaultTokenOperations(client),
    ... )
    >>> operations = VaultLeaseOperations(client, token_supplier=session.get_session_token)
    >>> ...
    >>> session.destroy()  # cancel refresh, revoke the login token
"""

import dataclasses
import logging
import threading
import time
from collections.abc import Callable
from functools import partial

from libs.vault_config.auth import ClientAuthentication, LoginToken
from libs.vault_config.exceptions import SessionError
from libs.vault_config.metrics import vault_session_refresh_total
from libs.vault_config.operations import TokenOperations
from libs.vault_config.task_scheduler import ScheduledTask, TaskSchedulerProtocol

logger = logging.getLogger(__name__)

SessionErrorListener = Callable[[Exception], None]


class LifecycleAwareSessionManager:
    """
    Thread-safe session token holder with scheduled refresh.

    Thread Safety:
        One lock guards the current token and the pending refresh task. Login
        runs under the lock so concurrent readers trigger a single login.
        Error listeners are called outside the lock.
    """

    def __init__(
        self,
        authentication: ClientAuthentication,
        task_scheduler: TaskSchedulerProtocol,
        token_operations: TokenOperations | None = None,
        refresh_before_expiry_seconds: int = 5,
        expiry_threshold_seconds: int = 7,
        clock: Callable[[], float] = time.monotonic,
        revoke_on_destroy: bool = True,
    ) -> None:
        """
        Args:
            authentication: Performs the login
            task_scheduler: Runs the background refresh
            token_operations: renew-self / revoke-self; without it tokens are
                never renewed (always re-login) and never revoked
            refresh_before_expiry_seconds: Refresh this long before the token expires
            expiry_threshold_seconds: Readers log in again below this remaining validity
            clock: Monotonic clock in seconds
            revoke_on_destroy: Revoke the token on destroy(). Disable for
                externally provisioned tokens that outlive this process.

        Raises:
            ValueError: refresh_before_expiry_seconds >= expiry_threshold_seconds
        """
        if refresh_before_expiry_seconds >= expiry_threshold_seconds:
            raise ValueError(
                "refresh_before_expiry_seconds must be less than expiry_threshold_seconds "
                f"(got {refresh_before_expiry_seconds} >= {expiry_threshold_seconds})"
            )
        self._authentication = authentication
        self._task_scheduler = task_scheduler
        self._token_operations = token_operations
        self.refresh_before_expiry_seconds = refresh_before_expiry_seconds
        self.expiry_threshold_seconds = expiry_threshold_seconds
        self._clock = clock
        self._revoke_on_destroy = revoke_on_destroy

        self._lock = threading.Lock()
        self._token: LoginToken | None = None
        self._refresh_task: ScheduledTask | None = None
        self._error_listeners: list[SessionErrorListener] = []

    def add_error_listener(self, listener: SessionErrorListener) -> None:
        with self._lock:
            self._error_listeners.append(listener)

    def remove_error_listener(self, listener: SessionErrorListener) -> None:
        with self._lock:
            if listener in self._error_listeners:
                self._error_listeners.remove(listener)

    @property
    def current_token(self) -> LoginToken | None:
        with self._lock:
            return self._token

    def get_session_token(self) -> str:
        """
        Return a token with at least ``expiry_threshold_seconds`` of validity left.

        Raises:
            SessionError: Login failed, or the fresh token is already below the threshold
        """
        with self._lock:
            token = self._token
            if token is None or token.is_expiring(self.expiry_threshold_seconds, self._clock()):
                if token is not None:
                    logger.info("Session token is expiring, logging in again")
                token = self._install(self._login())
            return token.token

    def revoke(self) -> None:
        """Cancel the pending refresh and revoke the token (best-effort, never raises)."""
        with self._lock:
            token = self._token
            task = self._refresh_task
            self._token = None
            self._refresh_task = None

        if task is not None:
            task.cancel()
        if token is None or self._token_operations is None or not self._revoke_on_destroy:
            return
        try:
            self._token_operations.revoke_token(token)
            logger.info("Session token revoked")
        except Exception as e:
            logger.warning(
                "Cannot revoke session token",
                extra={"error": str(e), "error_type": type(e).__name__},
            )

    def destroy(self) -> None:
        self.revoke()

    def _login(self) -> LoginToken:
        token = self._authentication.login()
        if token.expires and token.validity_seconds < self.expiry_threshold_seconds:
            logger.error(
                "Login returned a token valid for less than the expiry threshold",
                extra={
                    "validity_seconds": token.validity_seconds,
                    "expiry_threshold_seconds": self.expiry_threshold_seconds,
                },
            )
            raise SessionError(
                f"Login token is valid for {token.validity_seconds}s, below the expiry "
                f"threshold of {self.expiry_threshold_seconds}s"
            )
        return token

    def _install(self, token: LoginToken) -> LoginToken:
        """Restamp ``token`` with our clock, make it current and schedule its refresh. Caller holds the lock."""
        token = dataclasses.replace(token, issued_at=self._clock())
        previous_task = self._refresh_task
        self._refresh_task = None
        self._token = token
        if previous_task is not None:
            previous_task.cancel()

        if token.expires:
            delay = max(0.0, token.remaining_seconds(self._clock()) - self.refresh_before_expiry_seconds)
            self._refresh_task = self._task_scheduler.schedule(
                partial(self._refresh, token), delay, name="vault session refresh"
            )
            logger.debug(
                "Scheduled session token refresh",
                extra={"validity_seconds": token.validity_seconds, "delay_seconds": delay},
            )
        return token

    def _refresh(self, token: LoginToken) -> None:
        # Runs on a pool thread; nothing may escape into the scheduler
        try:
            with self._lock:
                if self._token is not token:
                    logger.debug("Session token changed, skipping refresh")
                    vault_session_refresh_total.labels(outcome="stale").inc()
                    return
                self._refresh_task = None
                outcome = self._refresh_locked(token)
            vault_session_refresh_total.labels(outcome=outcome).inc()
        except Exception as e:
            logger.error(
                "Cannot refresh session token",
                extra={"error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            vault_session_refresh_total.labels(outcome="error").inc()
            with self._lock:
                if self._token is token:
                    self._token = None
                listeners = list(self._error_listeners)
            for listener in listeners:
                try:
                    listener(e)
                except Exception:
                    logger.exception("Session error listener failed")

    def _refresh_locked(self, token: LoginToken) -> str:
        if token.renewable and self._token_operations is not None:
            renewed = self._token_operations.renew_token(token)
            if renewed.validity_seconds > self.expiry_threshold_seconds:
                self._install(renewed)
                logger.info(
                    "Session token renewed", extra={"validity_seconds": renewed.validity_seconds}
                )
                return "renewed"
            logger.info(
                "Renewed session token validity is at or below the expiry threshold, logging in again",
                extra={"validity_seconds": renewed.validity_seconds},
            )

        self._install(self._login())
        logger.info("Session token refreshed by login")
        return "login"
