"""
Tests for libs/vault_config/factory.py - wiring from settings.

Test Coverage:
    - Authentication selection (token, approle) and configuration errors
    - Session manager wiring (revocation only for login-obtained tokens)
    - Container construction: strategy, lifecycle switches, started state
"""

from unittest.mock import MagicMock, patch

import pytest

from libs.vault_config.auth import AppRoleAuthentication, TokenAuthentication
from libs.vault_config.exceptions import VaultConfigError
from libs.vault_config.factory import (
    create_authentication,
    create_hvac_client,
    create_secret_lease_container,
    create_session_manager,
)
from libs.vault_config.session import LifecycleAwareSessionManager
from libs.vault_config.settings import VaultConfigSettings
from libs.vault_config.source import bind_secret_source
from libs.vault_config.strategy import LeaseStrategyName


def _settings(**overrides) -> VaultConfigSettings:
    values = {"token": "s.test_token"}
    values.update(overrides)
    return VaultConfigSettings(_env_file=None, **values)


@pytest.fixture()
def mock_hvac_client():
    client = MagicMock()
    client.auth.token.lookup_self.return_value = {"data": {"ttl": 3600, "renewable": True}}
    return client


class TestCreateAuthentication:
    @pytest.mark.unit()
    def test_token_authentication(self, mock_hvac_client) -> None:
        assert isinstance(create_authentication(_settings(), mock_hvac_client), TokenAuthentication)

    @pytest.mark.unit()
    def test_token_required(self, mock_hvac_client) -> None:
        with pytest.raises(VaultConfigError, match="VAULT_TOKEN"):
            create_authentication(_settings(token=""), mock_hvac_client)

    @pytest.mark.unit()
    def test_approle_authentication(self, mock_hvac_client) -> None:
        settings = _settings(
            authentication="approle", app_role_role_id="role-1", app_role_secret_id="secret-1"
        )

        assert isinstance(create_authentication(settings, mock_hvac_client), AppRoleAuthentication)

    @pytest.mark.unit()
    def test_approle_requires_role_id(self, mock_hvac_client) -> None:
        with pytest.raises(VaultConfigError, match="ROLE_ID"):
            create_authentication(_settings(authentication="approle"), mock_hvac_client)

    @pytest.mark.unit()
    def test_unknown_method(self, mock_hvac_client) -> None:
        settings = VaultConfigSettings.model_construct(authentication="kubernetes")

        with pytest.raises(VaultConfigError, match="Unsupported authentication method"):
            create_authentication(settings, mock_hvac_client)


class TestCreateSessionManager:
    @pytest.mark.unit()
    def test_uses_settings_timing(self, mock_hvac_client, task_scheduler) -> None:
        settings = _settings(
            session_refresh_before_expiry_seconds=10, session_expiry_threshold_seconds=30
        )

        session = create_session_manager(settings, mock_hvac_client, task_scheduler)

        assert isinstance(session, LifecycleAwareSessionManager)
        assert session.refresh_before_expiry_seconds == 10
        assert session.expiry_threshold_seconds == 30

    @pytest.mark.unit()
    def test_static_token_not_revoked(self, mock_hvac_client, task_scheduler) -> None:
        session = create_session_manager(_settings(), mock_hvac_client, task_scheduler)
        session.get_session_token()

        session.destroy()

        mock_hvac_client.auth.token.revoke_self.assert_not_called()

    @pytest.mark.unit()
    def test_approle_token_revoked(self, mock_hvac_client, task_scheduler) -> None:
        mock_hvac_client.auth.approle.login.return_value = {
            "auth": {"client_token": "s.approle", "lease_duration": 600, "renewable": True}
        }
        settings = _settings(authentication="approle", app_role_role_id="role-1")
        session = create_session_manager(settings, mock_hvac_client, task_scheduler)
        session.get_session_token()

        session.destroy()

        mock_hvac_client.auth.token.revoke_self.assert_called_once()


class TestCreateSecretLeaseContainer:
    @pytest.mark.unit()
    def test_builds_started_container(self, mock_hvac_client) -> None:
        settings = _settings(
            lease_strategy="retain_on_io_error",
            min_renewal_seconds=15,
            scheduler_pool_size=1,
            fail_fast=True,
        )

        container = create_secret_lease_container(settings, client=mock_hvac_client)
        try:
            assert container.started is True
            assert container.min_renewal_seconds == 15
            assert container.lease_strategy.name is LeaseStrategyName.RETAIN_ON_IO_ERROR
            assert container.renewal_enabled is True
            assert container.fail_fast is True
        finally:
            container.destroy()

    @pytest.mark.unit()
    def test_session_token_supplied_to_operations(self, mock_hvac_client) -> None:
        mock_hvac_client.read.return_value = {"data": {"key": "value"}}
        container = create_secret_lease_container(_settings(), client=mock_hvac_client)
        try:
            source = bind_secret_source(container, "secret/static", fail_fast=True)

            assert source["key"] == "value"
            assert mock_hvac_client.token == "s.test_token"
            mock_hvac_client.auth.token.lookup_self.assert_called_once()
        finally:
            container.destroy()

    @pytest.mark.unit()
    def test_session_lifecycle_disabled_logs_in_eagerly(self, mock_hvac_client) -> None:
        settings = _settings(session_lifecycle_enabled=False, config_lifecycle_enabled=False)

        container = create_secret_lease_container(settings, client=mock_hvac_client)
        try:
            mock_hvac_client.auth.token.lookup_self.assert_called_once()
            assert mock_hvac_client.token == "s.test_token"
            assert container.renewal_enabled is False
        finally:
            container.destroy()

    @pytest.mark.unit()
    def test_client_built_from_settings(self) -> None:
        settings = _settings(addr="https://vault.example.com:8200", verify=False)

        with patch("libs.vault_config.factory.hvac.Client") as client_cls:
            create_hvac_client(settings)

        client_cls.assert_called_once_with(url="https://vault.example.com:8200", verify=False)
