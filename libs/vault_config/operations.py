"""
Vault lease and token operations.

These are the network calls the lifecycle core depends on:

    LeaseOperations
        fetch_initial(path) -> VaultSecrets     GET  <path>
        renew(lease) -> Lease | None            PUT  sys/leases/renew
        revoke(lease) -> None                   PUT  sys/leases/revoke

    TokenOperations
        renew_token(token) -> LoginToken        POST auth/token/renew-self
        revoke_token(token) -> None             POST auth/token/revoke-self

Retry Policy:
    Each call is retried 3 times with exponential backoff (1-5s) when Vault is
    down (VaultDown). All other failures are mapped to the library's exception
    hierarchy with the hvac error kept as __cause__, which lets
    LeaseStrategy.retain_on_io_error() recognise I/O failures.

Security:
    - Secret values NEVER logged (only paths and lease ids)
"""

import logging
from collections.abc import Callable
from typing import Any, Protocol

import hvac
from hvac.exceptions import (
    Forbidden,
    InvalidPath,
    InvalidRequest,
    Unauthorized,
    VaultDown,
    VaultError,
)
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from libs.vault_config.auth import LoginToken
from libs.vault_config.exceptions import (
    LeaseRenewalError,
    LeaseRevocationError,
    SecretAccessError,
    SecretNotFoundError,
    SessionError,
)
from libs.vault_config.lease import Lease
from libs.vault_config.response import VaultSecrets

logger = logging.getLogger(__name__)

_retry_when_vault_down = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    retry=retry_if_exception_type(VaultDown),
    reraise=True,
)


class LeaseOperations(Protocol):
    def fetch_initial(self, path: str) -> VaultSecrets: ...

    def renew(self, lease: Lease) -> Lease | None: ...

    def revoke(self, lease: Lease) -> None: ...


class TokenOperations(Protocol):
    def renew_token(self, token: LoginToken) -> LoginToken: ...

    def revoke_token(self, token: LoginToken) -> None: ...


class VaultLeaseOperations:
    """
    hvac-backed lease operations.

    Example:
        >>> operations = VaultLeaseOperations(client, token_supplier=session.get_session_token)
        >>> secrets = operations.fetch_initial("database/creds/readonly")
        >>> lease = Lease.from_secrets(secrets)
        >>> operations.renew(lease)
        Lease(lease_id='database/creds/readonly/abc', lease_duration=3600, renewable=True)
    """

    def __init__(
        self,
        client: hvac.Client,
        token_supplier: Callable[[], str] | None = None,
    ) -> None:
        """
        Args:
            client: hvac client (URL, TLS and adapter already configured)
            token_supplier: Returns the current session token; applied to the
                client before every call. If None, the client's token is used as-is.
        """
        self._client = client
        self._token_supplier = token_supplier

    def _prepared_client(self) -> hvac.Client:
        if self._token_supplier is not None:
            self._client.token = self._token_supplier()
        return self._client

    def fetch_initial(self, path: str) -> VaultSecrets:
        """
        Read a secret (typically a dynamic one, e.g. database/creds/<role>).

        Raises:
            SecretNotFoundError: Vault returned no data for the path
            SecretAccessError: Permission denied, Vault error, or Vault unreachable
        """
        try:
            return self._fetch_with_retry(path)
        except VaultDown as e:
            logger.error("Vault unreachable after retries", extra={"secret_path": path})
            raise SecretAccessError(path, f"Vault server unreachable: {e}") from e

    @_retry_when_vault_down
    def _fetch_with_retry(self, path: str) -> VaultSecrets:
        client = self._prepared_client()
        try:
            response: dict[str, Any] | None = client.read(path)
        except InvalidPath as e:
            raise SecretNotFoundError(path, f"Verify path: vault read {path}") from e
        except (Forbidden, Unauthorized) as e:
            raise SecretAccessError(
                path, f"Permission denied reading '{path}'. Verify token policy grants read"
            ) from e
        except VaultDown:
            # VaultDown is a VaultError; let the retry decorator see it
            raise
        except VaultError as e:
            logger.error(
                "Vault secret read failed - server error",
                extra={"secret_path": path, "error": str(e), "error_type": type(e).__name__},
                exc_info=True,
            )
            raise SecretAccessError(path, f"Vault error reading '{path}': {e}") from e

        if not response:
            raise SecretNotFoundError(path, "Vault returned an empty response")

        secrets = VaultSecrets.from_response(response)
        if secrets.warnings:
            logger.warning(
                "Vault returned warnings",
                extra={"secret_path": path, "warnings": secrets.warnings},
            )
        logger.debug(
            "Secret read from Vault",
            extra={
                "secret_path": path,
                "lease_id": secrets.lease_id or None,
                "request_id": secrets.request_id,
            },
        )
        return secrets

    def renew(self, lease: Lease) -> Lease | None:
        """
        Renew a lease.

        Returns:
            The renewed lease, or None when Vault returns no lease id (stop renewing).

        Raises:
            LeaseRenewalError: Renewal rejected, failed, or Vault unreachable
        """
        try:
            return self._renew_with_retry(lease)
        except VaultDown as e:
            logger.error("Vault unreachable after retries", extra={"lease_id": lease.lease_id})
            raise LeaseRenewalError(lease.lease_id, f"Vault server unreachable: {e}") from e

    @_retry_when_vault_down
    def _renew_with_retry(self, lease: Lease) -> Lease | None:
        client = self._prepared_client()
        try:
            response = client.sys.renew_lease(lease_id=lease.lease_id)
        except (Forbidden, Unauthorized) as e:
            raise LeaseRenewalError(
                lease.lease_id, "Permission denied. Verify token policy grants update on sys/leases/renew"
            ) from e
        except InvalidRequest as e:
            raise LeaseRenewalError(lease.lease_id, f"Renewal rejected (expired or revoked?): {e}") from e
        except VaultDown:
            raise
        except VaultError as e:
            raise LeaseRenewalError(lease.lease_id, f"Vault error: {e}") from e

        if not isinstance(response, dict):
            raise LeaseRenewalError(lease.lease_id, "Vault returned no response body")

        lease_id = response.get("lease_id")
        if not lease_id:
            return None
        return Lease.of(
            lease_id,
            int(response.get("lease_duration") or 0),
            bool(response.get("renewable", False)),
        )

    def revoke(self, lease: Lease) -> None:
        """
        Revoke a lease.

        Raises:
            LeaseRevocationError: Revocation rejected, failed, or Vault unreachable
        """
        try:
            self._revoke_with_retry(lease)
        except VaultDown as e:
            raise LeaseRevocationError(lease.lease_id, f"Vault server unreachable: {e}") from e

    @_retry_when_vault_down
    def _revoke_with_retry(self, lease: Lease) -> None:
        client = self._prepared_client()
        try:
            client.sys.revoke_lease(lease_id=lease.lease_id)
        except (Forbidden, Unauthorized) as e:
            raise LeaseRevocationError(
                lease.lease_id, "Permission denied. Verify token policy grants update on sys/leases/revoke"
            ) from e
        except VaultDown:
            raise
        except VaultError as e:
            raise LeaseRevocationError(lease.lease_id, f"Vault error: {e}") from e


class VaultTokenOperations:
    """hvac-backed token renewal and revocation (renew-self / revoke-self)."""

    def __init__(self, client: hvac.Client) -> None:
        self._client = client

    def renew_token(self, token: LoginToken) -> LoginToken:
        """
        Raises:
            SessionError: Renewal rejected, failed, or Vault unreachable
        """
        try:
            return self._renew_token_with_retry(token)
        except VaultDown as e:
            raise SessionError(f"Vault server unreachable during token renewal: {e}") from e

    @_retry_when_vault_down
    def _renew_token_with_retry(self, token: LoginToken) -> LoginToken:
        self._client.token = token.token
        try:
            response = self._client.auth.token.renew_self()
        except (Forbidden, Unauthorized, InvalidRequest) as e:
            raise SessionError(f"Token renewal rejected: {e}") from e
        except VaultDown:
            raise
        except VaultError as e:
            raise SessionError(f"Token renewal failed: {e}") from e
        return LoginToken.from_auth(response.get("auth") or {})

    def revoke_token(self, token: LoginToken) -> None:
        """
        Raises:
            SessionError: Revocation failed
        """
        self._client.token = token.token
        try:
            self._client.auth.token.revoke_self()
        except VaultError as e:
            raise SessionError(f"Token revocation failed: {e}") from e
