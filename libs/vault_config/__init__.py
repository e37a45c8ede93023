"""
Vault Lease Lifecycle Library.

Keeps dynamic Vault secrets (database credentials, cloud keys, ...) leased and
fresh for a long-running process: fetch once, renew before expiry, rotate when
a lease cannot be renewed any further, revoke at shutdown.

Architecture:
    - SecretLeaseContainer: requested secrets, lease events, revocation (container.py)
    - LeaseRenewalScheduler: one lineage of leases, one pending renewal (scheduler.py)
    - LifecycleAwareSessionManager: login token refresh (session.py)
    - VaultLeaseOperations / VaultTokenOperations: hvac calls with retry (operations.py)
    - LeaseAwareSecretSource: read-only mapping following one secret (source.py)
    - create_secret_lease_container(): wiring from VAULT_* settings (factory.py)

Quick Start:
    >>> from libs.vault_config import bind_secret_source, create_secret_lease_container
    >>> container = create_secret_lease_container()
    >>> db = bind_secret_source(container, "database/creds/readonly", fail_fast=True)
    >>> db["username"], db["password"]
    >>> container.destroy()

Security Requirements:
    - Secret values NEVER logged (only paths and lease ids)
    - Login tokens hidden from repr()
"""

from libs.vault_config.auth import (
    AppRoleAuthentication,
    ClientAuthentication,
    LoginToken,
    TokenAuthentication,
)
from libs.vault_config.container import SecretLeaseContainer
from libs.vault_config.events import (
    AfterSecretLeaseRenewedEvent,
    AfterSecretLeaseRevocationEvent,
    BeforeSecretLeaseRevocationEvent,
    SecretLeaseCreatedEvent,
    SecretLeaseErrorEvent,
    SecretLeaseEvent,
    SecretLeaseExpiredEvent,
    SecretLeaseRotatedEvent,
)
from libs.vault_config.exceptions import (
    InitialFetchError,
    InvalidLeaseError,
    LeaseRenewalError,
    LeaseRevocationError,
    SecretAccessError,
    SecretNotFoundError,
    SessionError,
    VaultConfigError,
)
from libs.vault_config.factory import (
    create_authentication,
    create_hvac_client,
    create_secret_lease_container,
    create_session_manager,
)
from libs.vault_config.lease import Lease, LeaseMode, RequestedSecret
from libs.vault_config.operations import (
    LeaseOperations,
    TokenOperations,
    VaultLeaseOperations,
    VaultTokenOperations,
)
from libs.vault_config.properties import PropertyNameTransformer, flatten_secrets
from libs.vault_config.response import VaultSecrets
from libs.vault_config.scheduler import LeaseRenewalScheduler
from libs.vault_config.session import LifecycleAwareSessionManager
from libs.vault_config.settings import VaultConfigSettings, get_settings
from libs.vault_config.source import LeaseAwareSecretSource, SourceState, bind_secret_source
from libs.vault_config.strategy import LeaseStrategy, LeaseStrategyName
from libs.vault_config.task_scheduler import TaskScheduler

# Package exports (PEP 8: __all__ defines public API)
__all__ = [
    # Wiring (recommended for most use cases)
    "create_secret_lease_container",
    "create_session_manager",
    "create_authentication",
    "create_hvac_client",
    "bind_secret_source",
    "VaultConfigSettings",
    "get_settings",
    # Lease model
    "Lease",
    "LeaseMode",
    "RequestedSecret",
    "VaultSecrets",
    # Lifecycle
    "SecretLeaseContainer",
    "LeaseRenewalScheduler",
    "LeaseStrategy",
    "LeaseStrategyName",
    "TaskScheduler",
    "LifecycleAwareSessionManager",
    # Vault access
    "LeaseOperations",
    "VaultLeaseOperations",
    "TokenOperations",
    "VaultTokenOperations",
    "ClientAuthentication",
    "TokenAuthentication",
    "AppRoleAuthentication",
    "LoginToken",
    # Secret sources
    "LeaseAwareSecretSource",
    "SourceState",
    "PropertyNameTransformer",
    "flatten_secrets",
    # Events
    "SecretLeaseEvent",
    "SecretLeaseCreatedEvent",
    "SecretLeaseRotatedEvent",
    "AfterSecretLeaseRenewedEvent",
    "SecretLeaseExpiredEvent",
    "BeforeSecretLeaseRevocationEvent",
    "AfterSecretLeaseRevocationEvent",
    "SecretLeaseErrorEvent",
    # Exceptions
    "VaultConfigError",
    "InvalidLeaseError",
    "SecretNotFoundError",
    "SecretAccessError",
    "InitialFetchError",
    "LeaseRenewalError",
    "LeaseRevocationError",
    "SessionError",
]
