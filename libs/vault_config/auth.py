"""
Client authentication: obtain a Vault token and its validity window.

Implementations:
    - TokenAuthentication: a pre-issued token (VAULT_TOKEN); validity read via lookup-self
    - AppRoleAuthentication: role_id/secret_id login against auth/approle

Security:
    - Tokens are never logged; LoginToken hides the token from repr()
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import hvac
from hvac.exceptions import Forbidden, InvalidRequest, Unauthorized, VaultDown, VaultError

from libs.vault_config.exceptions import SessionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class LoginToken:
    """
    A session token and its validity window.

    ``validity_seconds == 0`` means the token does not expire (e.g. root tokens).
    ``issued_at`` is a monotonic timestamp; the session manager restamps it with
    its own clock when it installs the token.
    """

    token: str = field(repr=False)
    validity_seconds: int = 0
    renewable: bool = False
    issued_at: float = field(default_factory=time.monotonic)

    @property
    def expires(self) -> bool:
        return self.validity_seconds > 0

    def remaining_seconds(self, now: float) -> float:
        return self.validity_seconds - (now - self.issued_at)

    def is_expiring(self, threshold_seconds: float, now: float) -> bool:
        """True if the token expires and has less than ``threshold_seconds`` left."""
        return self.expires and self.remaining_seconds(now) < threshold_seconds

    @classmethod
    def from_auth(cls, auth: dict[str, Any]) -> "LoginToken":
        """Build from the ``auth`` block of a Vault login/renew response."""
        token = auth.get("client_token")
        if not token:
            raise SessionError("Vault response carries no client token")
        return cls(
            token=token,
            validity_seconds=int(auth.get("lease_duration") or 0),
            renewable=bool(auth.get("renewable", False)),
        )


class ClientAuthentication(Protocol):
    def login(self) -> LoginToken: ...


class TokenAuthentication:
    """Static token authentication; validity and renewability come from lookup-self."""

    def __init__(self, client: hvac.Client, token: str) -> None:
        if not token:
            raise SessionError("Vault token must not be empty")
        self._client = client
        self._token = token

    def login(self) -> LoginToken:
        self._client.token = self._token
        try:
            response = self._client.auth.token.lookup_self()
        except Forbidden:
            # Token lacks the lookup-self capability; it may still work for secret
            # operations, but its TTL is unknown, so it is treated as non-expiring.
            logger.info("Vault token lacks 'lookup-self' capability, skipping token refresh")
            return LoginToken(token=self._token)
        except Unauthorized as e:
            raise SessionError(f"Vault token rejected: {e}") from e
        except VaultError as e:
            raise SessionError(f"Vault token lookup failed: {e}") from e

        data = response.get("data") or {}
        ttl = int(data.get("ttl") or 0)
        return LoginToken(
            token=self._token,
            validity_seconds=ttl,
            renewable=bool(data.get("renewable", False)) and ttl > 0,
        )


class AppRoleAuthentication:
    """AppRole login (auth/<mount_point>/login)."""

    def __init__(
        self,
        client: hvac.Client,
        role_id: str,
        secret_id: str | None = None,
        mount_point: str = "approle",
    ) -> None:
        if not role_id:
            raise SessionError("AppRole role_id must not be empty")
        self._client = client
        self._role_id = role_id
        self._secret_id = secret_id
        self._mount_point = mount_point

    def login(self) -> LoginToken:
        try:
            response = self._client.auth.approle.login(
                role_id=self._role_id,
                secret_id=self._secret_id,
                use_token=False,
                mount_point=self._mount_point,
            )
        except (Unauthorized, Forbidden, InvalidRequest) as e:
            raise SessionError(f"AppRole login rejected: {e}") from e
        except VaultDown as e:
            raise SessionError(f"Vault server unreachable during AppRole login: {e}") from e
        except VaultError as e:
            raise SessionError(f"AppRole login failed: {e}") from e

        token = LoginToken.from_auth(response.get("auth") or {})
        logger.info(
            "AppRole login succeeded",
            extra={"mount_point": self._mount_point, "validity_seconds": token.validity_seconds},
        )
        return token
