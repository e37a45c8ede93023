"""
Lease strategies: what to do with a lease whose renewal failed.

    - drop_on_error: abandon the lease (default)
    - retain_on_error: keep the lease and retry renewal
    - retain_on_io_error: keep the lease only when the failure was an I/O error

The renewal scheduler consults ``should_drop`` after every failed renewal.
A retained lease is retried after ``min_renewal_seconds`` for as long as it
has not expired.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum

import requests
from hvac.exceptions import VaultDown

_IO_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    VaultDown,
)


def is_io_error(error: BaseException) -> bool:
    """Return True if the error or anything in its cause/context chain is an I/O error."""
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        if isinstance(current, _IO_ERRORS):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False


class LeaseStrategyName(str, Enum):
    DROP_ON_ERROR = "drop_on_error"
    RETAIN_ON_ERROR = "retain_on_error"
    RETAIN_ON_IO_ERROR = "retain_on_io_error"


class LeaseStrategy:
    """Decides whether a lease is dropped after a renewal error."""

    def __init__(self, name: LeaseStrategyName, drop: Callable[[BaseException], bool]) -> None:
        self.name = name
        self._drop = drop

    def should_drop(self, error: BaseException) -> bool:
        return self._drop(error)

    @classmethod
    def drop_on_error(cls) -> LeaseStrategy:
        return cls(LeaseStrategyName.DROP_ON_ERROR, lambda error: True)

    @classmethod
    def retain_on_error(cls) -> LeaseStrategy:
        return cls(LeaseStrategyName.RETAIN_ON_ERROR, lambda error: False)

    @classmethod
    def retain_on_io_error(cls) -> LeaseStrategy:
        return cls(LeaseStrategyName.RETAIN_ON_IO_ERROR, lambda error: not is_io_error(error))

    @classmethod
    def from_name(cls, name: LeaseStrategyName | str) -> LeaseStrategy:
        """
        Resolve a strategy from its configuration name.

        Raises:
            ValueError: Unknown strategy name.
        """
        resolved = LeaseStrategyName(name)
        if resolved is LeaseStrategyName.RETAIN_ON_ERROR:
            return cls.retain_on_error()
        if resolved is LeaseStrategyName.RETAIN_ON_IO_ERROR:
            return cls.retain_on_io_error()
        return cls.drop_on_error()

    def __repr__(self) -> str:
        return f"LeaseStrategy({self.name.value})"
