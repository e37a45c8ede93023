"""
Lease lifecycle events published by the SecretLeaseContainer.

Every event carries the RequestedSecret it belongs to as ``source`` and the
lease it concerns. Listeners compare ``event.source`` by identity to pick the
events of their own secret.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from libs.vault_config.lease import Lease, RequestedSecret


@dataclass(frozen=True)
class SecretLeaseEvent:
    source: RequestedSecret
    lease: Lease | None


@dataclass(frozen=True)
class SecretLeaseCreatedEvent(SecretLeaseEvent):
    """Initial fetch succeeded; ``data`` holds the secret body."""

    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SecretLeaseRotatedEvent(SecretLeaseCreatedEvent):
    """A rotating secret was requested again; ``data`` holds the new credentials."""

    previous_lease: Lease | None = None


@dataclass(frozen=True)
class AfterSecretLeaseRenewedEvent(SecretLeaseEvent):
    pass


@dataclass(frozen=True)
class SecretLeaseExpiredEvent(SecretLeaseEvent):
    """Renewal returned no lease: the lineage is not renewed any further."""


@dataclass(frozen=True)
class BeforeSecretLeaseRevocationEvent(SecretLeaseEvent):
    pass


@dataclass(frozen=True)
class AfterSecretLeaseRevocationEvent(SecretLeaseEvent):
    pass


@dataclass(frozen=True)
class SecretLeaseErrorEvent(SecretLeaseEvent):
    error: BaseException | None = None


LeaseListener = Callable[[SecretLeaseEvent], None]
LeaseErrorListener = Callable[[SecretLeaseEvent, BaseException], None]
