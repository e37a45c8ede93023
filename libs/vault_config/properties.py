"""
Flattening and renaming of secret bodies into string properties.

Example:
    >>> flatten_secrets({"db": {"user": "app", "ports": [5432, 5433]}, "ttl": None})
    {'db.user': 'app', 'db.ports[0]': '5432', 'db.ports[1]': '5433'}
"""

from collections.abc import Mapping
from typing import Any


def flatten_secrets(data: Mapping[str, Any]) -> dict[str, str]:
    """
    Flatten nested mappings to dotted keys and sequences to ``key[i]``.

    Scalars are converted with str(); booleans are rendered lowercase
    ("true"/"false") so they read like configuration values. None is skipped.
    """
    result: dict[str, str] = {}
    _flatten_into(result, "", data)
    return result


def _flatten_into(result: dict[str, str], prefix: str, value: Any) -> None:
    if value is None:
        return
    if isinstance(value, Mapping):
        for key, item in value.items():
            _flatten_into(result, f"{prefix}.{key}" if prefix else str(key), item)
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _flatten_into(result, f"{prefix}[{index}]", item)
    elif isinstance(value, bool):
        result[prefix] = "true" if value else "false"
    else:
        result[prefix] = str(value)


class PropertyNameTransformer:
    """
    Renames property keys, e.g. ``username`` -> ``spring.datasource.username``.

    Keys without a transformation pass through unchanged. Order is preserved.
    """

    def __init__(self) -> None:
        self._transformations: dict[str, str] = {}

    def add_key_transformation(self, source_key: str, target_key: str) -> "PropertyNameTransformer":
        if not source_key:
            raise ValueError("Source key must not be empty")
        if not target_key:
            raise ValueError("Target key must not be empty")
        self._transformations[source_key] = target_key
        return self

    def transform(self, properties: Mapping[str, str]) -> dict[str, str]:
        return {self._transformations.get(key, key): value for key, value in properties.items()}
