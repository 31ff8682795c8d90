"""Environment helper utilities."""

from __future__ import annotations

import os
import re
from typing import Optional, Sequence


_FALSE_VALUES = {"0", "false", "no", "off"}
_LIST_SEPARATORS = re.compile(r"[\s,]+")


def get_str_env(name: str, *, default: Optional[str] = None) -> Optional[str]:
    """Return the stripped value of ``name``; blank counts as unset."""
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def get_bool_env(name: str, *, default: bool = False) -> bool:
    value = get_str_env(name)
    if value is None:
        return default
    return value.lower() not in _FALSE_VALUES


def get_list_env(name: str, *, default: Sequence[str] | None = None) -> list[str]:
    """
    Read a list separated by commas and/or whitespace.

    Both the ZooKeeper connect-string form (``zk1:2181,zk2:2181``) and a
    space-separated form are accepted.
    """
    value = get_str_env(name)
    if value is None:
        return list(default or [])
    return [item for item in _LIST_SEPARATORS.split(value) if item]
