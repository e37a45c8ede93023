"""
Factory wiring a SecretLeaseContainer from VaultConfigSettings.

    VaultConfigSettings (VAULT_* env vars)
        → hvac.Client(url, verify)
        → ClientAuthentication (token | approle)
        → LifecycleAwareSessionManager (if session lifecycle enabled)
        → VaultLeaseOperations(token_supplier=session.get_session_token)
        → TaskScheduler(pool_size) → SecretLeaseContainer (started)

Example Usage:
    >>> container = create_secret_lease_container()
    >>> source = bind_secret_source(container, "database/creds/readonly", fail_fast=True)
    >>> connect(user=source["username"], password=source["password"])
    >>> ...
    >>> container.destroy()  # revokes leases, then the login token

Environment Variables:
    VAULT_ADDR, VAULT_TOKEN, VAULT_AUTHENTICATION, VAULT_APP_ROLE_ROLE_ID, ...
    See libs/vault_config/settings.py for the full list.
"""

import logging

import hvac

from libs.vault_config.auth import AppRoleAuthentication, ClientAuthentication, TokenAuthentication
from libs.vault_config.container import SecretLeaseContainer
from libs.vault_config.exceptions import VaultConfigError
from libs.vault_config.operations import VaultLeaseOperations, VaultTokenOperations
from libs.vault_config.session import LifecycleAwareSessionManager
from libs.vault_config.settings import VaultConfigSettings, get_settings
from libs.vault_config.strategy import LeaseStrategy
from libs.vault_config.task_scheduler import TaskScheduler, TaskSchedulerProtocol

logger = logging.getLogger(__name__)


def create_hvac_client(settings: VaultConfigSettings) -> hvac.Client:
    """Unauthenticated hvac client; the token is applied per call."""
    if not settings.verify:
        logger.warning(
            "TLS verification disabled for Vault (local development only)",
            extra={"vault_url": settings.addr},
        )
    return hvac.Client(url=settings.addr, verify=settings.verify)


def create_authentication(
    settings: VaultConfigSettings, client: hvac.Client
) -> ClientAuthentication:
    """
    Select the authentication method from ``settings.authentication``.

    Raises:
        VaultConfigError: Unknown method or missing credentials
    """
    method = str(settings.authentication).lower().strip()

    if method == "token":
        token = settings.token.get_secret_value()
        if not token:
            raise VaultConfigError(
                "VAULT_TOKEN is required for token authentication. "
                "Set VAULT_AUTHENTICATION=approle to log in with AppRole instead."
            )
        return TokenAuthentication(client, token)

    if method == "approle":
        if not settings.app_role_role_id:
            raise VaultConfigError("VAULT_APP_ROLE_ROLE_ID is required for AppRole authentication")
        return AppRoleAuthentication(
            client,
            role_id=settings.app_role_role_id,
            secret_id=settings.app_role_secret_id.get_secret_value() or None,
            mount_point=settings.app_role_mount_point,
        )

    raise VaultConfigError(
        f"Unsupported authentication method '{settings.authentication}'. "
        "Supported methods: token, approle"
    )


def create_session_manager(
    settings: VaultConfigSettings,
    client: hvac.Client,
    task_scheduler: TaskSchedulerProtocol,
    authentication: ClientAuthentication | None = None,
) -> LifecycleAwareSessionManager:
    """
    Session manager refreshing the login token on ``task_scheduler``.

    Externally provisioned tokens (token authentication) are not revoked on
    shutdown; tokens obtained by login are.
    """
    authentication = authentication or create_authentication(settings, client)
    return LifecycleAwareSessionManager(
        authentication,
        task_scheduler,
        token_operations=VaultTokenOperations(client),
        refresh_before_expiry_seconds=settings.session_refresh_before_expiry_seconds,
        expiry_threshold_seconds=settings.session_expiry_threshold_seconds,
        revoke_on_destroy=not isinstance(authentication, TokenAuthentication),
    )


def create_secret_lease_container(
    settings: VaultConfigSettings | None = None,
    client: hvac.Client | None = None,
) -> SecretLeaseContainer:
    """
    Build and start a SecretLeaseContainer.

    Args:
        settings: Configuration (default: get_settings(), i.e. VAULT_* env vars)
        client: Pre-configured hvac client (default: built from settings)

    Returns:
        Started container that owns its task scheduler and session manager.

    Raises:
        VaultConfigError: Invalid authentication configuration
        SessionError: Login failed (session lifecycle disabled, login happens eagerly)
    """
    settings = settings or get_settings()
    client = client or create_hvac_client(settings)
    task_scheduler = TaskScheduler(pool_size=settings.scheduler_pool_size)
    authentication = create_authentication(settings, client)

    session_manager: LifecycleAwareSessionManager | None = None
    if settings.session_lifecycle_enabled:
        session_manager = create_session_manager(settings, client, task_scheduler, authentication)
        operations = VaultLeaseOperations(client, token_supplier=session_manager.get_session_token)
    else:
        client.token = authentication.login().token
        operations = VaultLeaseOperations(client)

    container = SecretLeaseContainer(
        operations,
        task_scheduler,
        min_renewal_seconds=settings.min_renewal_seconds,
        expiry_threshold_seconds=settings.expiry_threshold_seconds,
        lease_strategy=LeaseStrategy.from_name(settings.lease_strategy),
        session_manager=session_manager,
        owns_scheduler=True,
        renewal_enabled=settings.config_lifecycle_enabled,
        fail_fast=settings.fail_fast,
    )
    container.start()

    logger.info(
        "Vault secret lease container created",
        extra={
            "vault_url": settings.addr,
            "authentication": settings.authentication,
            "lease_strategy": settings.lease_strategy.value,
            "session_lifecycle_enabled": settings.session_lifecycle_enabled,
            "config_lifecycle_enabled": settings.config_lifecycle_enabled,
        },
    )
    return container
