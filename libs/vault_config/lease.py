"""
Lease value object and requested-secret descriptors.

A Lease is immutable and compares by value. The renewal scheduler relies on
object identity (``is``) to detect whether a timer still belongs to the most
recent lease of its lineage, so two equal leases are still distinct renewals.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from libs.vault_config.exceptions import InvalidLeaseError
from libs.vault_config.response import VaultSecrets


@dataclass(frozen=True)
class Lease:
    """
    Time-bound grant for a secret: id, duration in seconds and renewability.

    Use ``Lease.of`` to construct validated instances.
    """

    lease_id: str
    lease_duration: int
    renewable: bool

    @classmethod
    def of(cls, lease_id: str, lease_duration: int, renewable: bool) -> Lease:
        """
        Create a validated Lease.

        Raises:
            InvalidLeaseError: lease_id is empty or lease_duration is negative.

        Example:
            >>> Lease.of("database/creds/app/abc", 3600, True).renewable
            True
        """
        if not lease_id:
            raise InvalidLeaseError("lease id must not be empty")
        if lease_duration < 0:
            raise InvalidLeaseError(
                f"lease duration must be >= 0, got {lease_duration}", lease_id=lease_id
            )
        return cls(lease_id=lease_id, lease_duration=int(lease_duration), renewable=bool(renewable))

    @classmethod
    def from_secrets(cls, secrets: VaultSecrets | None) -> Lease | None:
        """Return the lease carried by a response, or None if the resource has no lease."""
        if secrets is None or not secrets.lease_id:
            return None
        return cls.of(secrets.lease_id, secrets.lease_duration, secrets.renewable)


class LeaseMode(str, Enum):
    """How a requested secret is kept fresh."""

    RENEW = "renew"
    """Extend the lease via sys/leases/renew before it expires."""

    ROTATE = "rotate"
    """Request the secret again before the lease expires (new credentials)."""


@dataclass(frozen=True, eq=False)
class RequestedSecret:
    """
    A secret path registered with the lease container.

    Compared by identity: two registrations of the same path are two lineages.
    """

    path: str
    mode: LeaseMode = LeaseMode.RENEW

    def __post_init__(self) -> None:
        if not self.path:
            raise ValueError("path must not be empty")

    @classmethod
    def renewable(cls, path: str) -> RequestedSecret:
        return cls(path=path, mode=LeaseMode.RENEW)

    @classmethod
    def rotating(cls, path: str) -> RequestedSecret:
        return cls(path=path, mode=LeaseMode.ROTATE)
