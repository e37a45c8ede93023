"""Secrets bag returned by a Vault read: data plus lease metadata."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class VaultSecrets:
    """
    Secret data read from Vault along with its lease metadata.

    ``request_id``, ``warnings`` and ``wrap_info`` are carried for diagnostics
    only; renewal decisions use ``lease_id``, ``lease_duration`` and ``renewable``.
    """

    data: dict[str, Any] = field(default_factory=dict)
    lease_id: str = ""
    lease_duration: int = 0
    renewable: bool = False
    request_id: str | None = None
    warnings: list[str] = field(default_factory=list)
    wrap_info: dict[str, Any] | None = None

    @classmethod
    def from_response(cls, response: dict[str, Any]) -> VaultSecrets:
        """
        Build from a Vault JSON response body.

        Example:
            >>> VaultSecrets.from_response({
            ...     "lease_id": "database/creds/app/abc",
            ...     "lease_duration": 3600,
            ...     "renewable": True,
            ...     "data": {"username": "v-app-x1", "password": "..."},
            ... }).lease_duration
            3600
        """
        return cls(
            data=dict(response.get("data") or {}),
            lease_id=response.get("lease_id") or "",
            lease_duration=int(response.get("lease_duration") or 0),
            renewable=bool(response.get("renewable", False)),
            request_id=response.get("request_id"),
            warnings=list(response.get("warnings") or []),
            wrap_info=response.get("wrap_info"),
        )
