"""Helper utilities for accessing configuration sections regardless of the backing loader."""
from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional


def get_config_section(source: Any, section: str) -> Dict:
    """Return a plain dictionary section from Config, SectionProxy or dict objects."""
    if source is None:
        return {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, None)
        if isinstance(candidate, Mapping):
            return _plain(candidate)

    return {}


def _plain(section: Mapping) -> Dict:
    out: Dict[str, Any] = {}
    for key in section:
        value = section[key]
        out[key] = _plain(value) if isinstance(value, Mapping) else value
    return out


def as_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """Coerce YAML numbers and strings to Decimal without float noise."""
    if value is None or value == '':
        return default
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default
