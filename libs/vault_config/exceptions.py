"""
Vault Config Exception Hierarchy.

This module defines all exceptions raised by the lease and session lifecycle
library, giving clear error semantics for initial secret retrieval, lease
renewal, lease revocation and token session failures.

Exception hierarchy:
    VaultConfigError (base)
    ├── InvalidLeaseError - Lease constructed with invalid attributes (also ValueError)
    ├── SecretNotFoundError - Secret path returned no data
    ├── SecretAccessError - Permission/authentication failure
    ├── InitialFetchError - Initial fetch failed while binding a secret (fail-fast)
    ├── LeaseRenewalError - Renewing a lease failed
    ├── LeaseRevocationError - Revoking a lease failed (logged, never propagated)
    └── SessionError - Login or token refresh failed

All exceptions carry structured context (secret path, lease id) without
exposing secret values.
"""


class VaultConfigError(Exception):
    """
    Base exception for all vault config errors.

    Subclasses MUST NOT include secret values in error messages. Secret paths
    and lease ids are safe to include (they are opaque identifiers).

    Attributes:
        message: Human-readable error message (MUST NOT include secret values)
        path: Secret path the error relates to (e.g., "database/creds/readonly")
        lease_id: Lease id the error relates to

    Example:
        >>> try:
        ...     source = bind_secret_source(container, "database/creds/app", fail_fast=True)
        ... except VaultConfigError as e:
        ...     logger.error("Vault error", extra={"secret_path": e.path})
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        lease_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.lease_id = lease_id

    def __str__(self) -> str:
        """
        Format error message with context (path + lease id).

        Example:
            >>> str(VaultConfigError("Timeout", "database/creds/app", "database/creds/app/abc"))
            'Timeout (path: database/creds/app, lease: database/creds/app/abc)'
        """
        context_parts = []
        if self.path:
            context_parts.append(f"path: {self.path}")
        if self.lease_id:
            context_parts.append(f"lease: {self.lease_id}")

        if context_parts:
            return f"{self.message} ({', '.join(context_parts)})"
        return self.message


class InvalidLeaseError(VaultConfigError, ValueError):
    """Raised when a Lease is constructed with an empty id or negative duration."""

    def __init__(self, reason: str, lease_id: str | None = None) -> None:
        super().__init__(message=f"Invalid lease: {reason}", lease_id=lease_id or None)


class SecretNotFoundError(VaultConfigError):
    """
    Raised when a requested secret path returns no data.

    Common causes:
    - Dynamic backend role doesn't exist (e.g., database/creds/<role>)
    - Wrong mount point
    - Typo in secret path
    """

    def __init__(self, path: str, additional_context: str | None = None) -> None:
        if not isinstance(path, str) or not path:
            raise TypeError("path must be a non-empty string")

        message = f"Secret at '{path}' not found in Vault"
        if additional_context:
            message += f". {additional_context}"
        super().__init__(message=message, path=path)


class SecretAccessError(VaultConfigError):
    """
    Raised when authentication/authorization fails accessing Vault.

    Common causes:
    - Expired token (session lifecycle disabled or fell behind)
    - Missing policy capability (read on path, update on sys/leases/renew)
    - Vault sealed or unreachable
    """

    def __init__(self, path: str, reason: str) -> None:
        if not isinstance(path, str) or not path:
            raise TypeError("path must be a non-empty string")
        if not isinstance(reason, str) or not reason:
            raise TypeError("reason must be a non-empty string")

        super().__init__(message=f"Access denied: {reason}", path=path)


class InitialFetchError(VaultConfigError):
    """
    Raised synchronously to the caller binding a secret when fail-fast is enabled.

    Without fail-fast the same failure is only logged and the secret is absent
    from the exposed properties.
    """

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(message=f"Cannot initialize secret source: {reason}", path=path)


class LeaseRenewalError(VaultConfigError):
    """
    Raised when renewing a lease fails.

    Renewal runs on background threads, so this exception never reaches
    application code directly. It is routed to error listeners and the
    configured LeaseStrategy decides whether the lease is dropped or retained.
    """

    def __init__(self, lease_id: str, reason: str, path: str | None = None) -> None:
        super().__init__(message=f"Cannot renew lease: {reason}", path=path, lease_id=lease_id)


class LeaseRevocationError(VaultConfigError):
    """Raised when revoking a lease fails. Always logged, never propagated to shutdown callers."""

    def __init__(self, lease_id: str, reason: str, path: str | None = None) -> None:
        super().__init__(message=f"Cannot revoke lease: {reason}", path=path, lease_id=lease_id)


class SessionError(VaultConfigError):
    """Raised when logging in or refreshing the session token fails."""

    def __init__(self, reason: str) -> None:
        super().__init__(message=f"Session error: {reason}")
