"""
Lease-aware secret source: a read-only mapping kept current by lease events.

A source follows exactly one RequestedSecret. Created and rotated events swap
in new data, renewal keeps it, errors and revocation only change the state.
Readers always see a complete snapshot: the data is replaced by a single
reference assignment, never mutated in place.

State machine:

    UNINITIALIZED ──created──► ACTIVE ◄──renewed/rotated── ERRORED
          │                     │  ▲                          ▲
          └────────error────────┼──┼────────────error─────────┘
                                │  └── renewed/rotated
                                └──after revocation──► REVOKED

Example:
    >>> source = bind_secret_source(container, "database/creds/app", fail_fast=True)
    >>> source["username"]
    'v-app-x1y2'
    >>> source.state
    <SourceState.ACTIVE: 'active'>
"""

import logging
from collections.abc import Iterator, Mapping
from enum import Enum

from libs.vault_config.container import SecretLeaseContainer
from libs.vault_config.events import (
    AfterSecretLeaseRenewedEvent,
    AfterSecretLeaseRevocationEvent,
    SecretLeaseCreatedEvent,
    SecretLeaseErrorEvent,
    SecretLeaseEvent,
)
from libs.vault_config.exceptions import InitialFetchError, VaultConfigError
from libs.vault_config.lease import LeaseMode, RequestedSecret
from libs.vault_config.properties import PropertyNameTransformer, flatten_secrets

logger = logging.getLogger(__name__)


class SourceState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    ERRORED = "errored"
    REVOKED = "revoked"


class LeaseAwareSecretSource(Mapping[str, str]):
    """Read-only view of one secret's current data."""

    def __init__(
        self,
        name: str,
        container: SecretLeaseContainer,
        requested_secret: RequestedSecret,
        transformer: PropertyNameTransformer | None = None,
    ) -> None:
        self.name = name
        self.requested_secret = requested_secret
        self._container = container
        self._transformer = transformer
        self._data: dict[str, str] = {}
        self._state = SourceState.UNINITIALIZED
        self._closed = False
        container.add_lease_listener(self._on_lease_event)

    @property
    def state(self) -> SourceState:
        return self._state

    @property
    def data(self) -> dict[str, str]:
        """Snapshot copy of the current data."""
        return dict(self._data)

    def __getitem__(self, key: str) -> str:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        # Never include values
        return (
            f"LeaseAwareSecretSource(name={self.name!r}, path={self.requested_secret.path!r}, "
            f"state={self._state.value}, keys={len(self._data)})"
        )

    def close(self) -> None:
        """Stop following lease events (idempotent). Data is retained."""
        if self._closed:
            return
        self._closed = True
        self._container.remove_lease_listener(self._on_lease_event)

    def _on_lease_event(self, event: SecretLeaseEvent) -> None:
        if event.source is not self.requested_secret:
            return

        # SecretLeaseRotatedEvent is a SecretLeaseCreatedEvent
        if isinstance(event, SecretLeaseCreatedEvent):
            properties = flatten_secrets(event.data)
            if self._transformer is not None:
                properties = self._transformer.transform(properties)
            self._data = properties
            self._state = SourceState.ACTIVE
        elif isinstance(event, AfterSecretLeaseRenewedEvent):
            self._state = SourceState.ACTIVE
        elif isinstance(event, SecretLeaseErrorEvent):
            self._state = SourceState.ERRORED
        elif isinstance(event, AfterSecretLeaseRevocationEvent):
            self._state = SourceState.REVOKED


def bind_secret_source(
    container: SecretLeaseContainer,
    path: str,
    *,
    name: str | None = None,
    mode: LeaseMode = LeaseMode.RENEW,
    fail_fast: bool | None = None,
    transformer: PropertyNameTransformer | None = None,
) -> LeaseAwareSecretSource:
    """
    Register ``path`` with the container and return a source following it.

    If the container is already started the initial fetch happens here.

    Args:
        container: Lease container owning renewal
        path: Vault path, e.g. "database/creds/readonly"
        name: Source name (default: the path)
        mode: RENEW the lease, or ROTATE (fetch new credentials before expiry)
        fail_fast: Raise if the initial fetch fails instead of logging it
            (default: container.fail_fast). Requires a started container.
        transformer: Optional key renaming applied to the flattened data

    Raises:
        VaultConfigError: fail_fast and the initial fetch failed
            (InitialFetchError unless Vault reported a more specific error),
            or fail_fast and the container is not started
    """
    if fail_fast is None:
        fail_fast = container.fail_fast
    if fail_fast and not container.started:
        raise VaultConfigError(
            "fail_fast requires a started SecretLeaseContainer; call start() first", path=path
        )

    secret = RequestedSecret(path, mode)
    source = LeaseAwareSecretSource(name or path, container, secret, transformer)

    if not fail_fast:
        container.add_requested_secret(secret)
        if source.state is SourceState.ERRORED:
            logger.warning(
                "Secret source is empty after failed initial fetch",
                extra={"secret_path": path, "source": source.name},
            )
        return source

    errors: list[BaseException] = []

    def capture(event: SecretLeaseEvent, error: BaseException) -> None:
        if event.source is secret and not errors:
            errors.append(error)

    container.add_error_listener(capture)
    try:
        container.add_requested_secret(secret)
    finally:
        container.remove_error_listener(capture)

    if errors:
        source.close()
        error = errors[0]
        if isinstance(error, VaultConfigError):
            raise error
        raise InitialFetchError(path, f"{type(error).__name__}: {error}") from error
    return source
