"""Tests for libs/vault_config/strategy.py - lease strategies after renewal errors."""

import pytest
import requests
from hvac.exceptions import Forbidden, VaultDown

from libs.vault_config.exceptions import LeaseRenewalError
from libs.vault_config.strategy import LeaseStrategy, LeaseStrategyName, is_io_error


def _wrapped(cause: BaseException) -> LeaseRenewalError:
    try:
        try:
            raise cause
        except BaseException as e:
            raise LeaseRenewalError("lease-1", "failed") from e
    except LeaseRenewalError as wrapped:
        return wrapped


class TestIsIoError:
    @pytest.mark.unit()
    @pytest.mark.parametrize(
        "error",
        [
            ConnectionRefusedError("refused"),
            TimeoutError("timed out"),
            requests.exceptions.ConnectionError("reset"),
            requests.exceptions.ReadTimeout("slow"),
            VaultDown("sealed"),
        ],
    )
    def test_direct_io_errors(self, error: BaseException) -> None:
        assert is_io_error(error) is True

    @pytest.mark.unit()
    def test_io_error_in_cause_chain(self) -> None:
        assert is_io_error(_wrapped(VaultDown("down"))) is True

    @pytest.mark.unit()
    def test_non_io_errors(self) -> None:
        assert is_io_error(Forbidden("denied")) is False
        assert is_io_error(_wrapped(ValueError("bad"))) is False

    @pytest.mark.unit()
    def test_cyclic_chain_terminates(self) -> None:
        first = ValueError("a")
        second = ValueError("b")
        first.__cause__ = second
        second.__cause__ = first

        assert is_io_error(first) is False


class TestLeaseStrategy:
    @pytest.mark.unit()
    def test_drop_on_error_always_drops(self) -> None:
        strategy = LeaseStrategy.drop_on_error()

        assert strategy.should_drop(ValueError()) is True
        assert strategy.should_drop(VaultDown()) is True

    @pytest.mark.unit()
    def test_retain_on_error_never_drops(self) -> None:
        strategy = LeaseStrategy.retain_on_error()

        assert strategy.should_drop(ValueError()) is False
        assert strategy.should_drop(Forbidden()) is False

    @pytest.mark.unit()
    def test_retain_on_io_error(self) -> None:
        strategy = LeaseStrategy.retain_on_io_error()

        assert strategy.should_drop(_wrapped(VaultDown("down"))) is False
        assert strategy.should_drop(_wrapped(Forbidden("denied"))) is True

    @pytest.mark.unit()
    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("drop_on_error", LeaseStrategyName.DROP_ON_ERROR),
            ("retain_on_error", LeaseStrategyName.RETAIN_ON_ERROR),
            (LeaseStrategyName.RETAIN_ON_IO_ERROR, LeaseStrategyName.RETAIN_ON_IO_ERROR),
        ],
    )
    def test_from_name(self, name: str, expected: LeaseStrategyName) -> None:
        assert LeaseStrategy.from_name(name).name is expected

    @pytest.mark.unit()
    def test_from_name_unknown(self) -> None:
        with pytest.raises(ValueError):
            LeaseStrategy.from_name("retry_forever")
