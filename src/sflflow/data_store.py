# ============================================================================
#  File: data_store.py
#  Purpose: Per-run key/value context and {{dotted.path}} template resolution
# ============================================================================
# SECTION 1: Global Variable Definitions & Imports
# ============================================================================
#
import copy
import json
import re
from typing import Any, Dict, Optional, Tuple

from loguru import logger

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w.\-]+)\s*\}\}")
SINGLE_PLACEHOLDER_PATTERN = re.compile(r"^\{\{\s*([\w.\-]+)\s*\}\}$")


class _Missing:
    """Sentinel for a path that does not exist (distinct from a stored None)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()
#
# ============================================================================
# SECTION 2: Dotted-path Lookup
# ============================================================================
# Function 2.1: get_nested_value
# ============================================================================
#
def get_nested_value(data: Any, path: str) -> Tuple[Any, bool]:
    """
    Get a nested value using dot notation across mappings and list indices.

    Returns:
        Tuple of (value, exists). `exists` is True even when the value is None.
    """
    current = data
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx < len(current):
                current = current[idx]
            else:
                return None, False
        else:
            return None, False
    return current, True
#
# ============================================================================
# SECTION 3: Data Store
# ============================================================================
# Class 3.1: DataStore
# ============================================================================
#
class DataStore:
    """
    Mutable mapping threaded through one workflow run.

    Owned by a single worker for the lifetime of one job attempt. There is
    no delete: each task writes its result once under its output key.
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def lookup(self, path: str) -> Any:
        """Dotted-path read; returns MISSING when any segment is absent."""
        value, exists = get_nested_value(self._data, path)
        return value if exists else MISSING

    def snapshot(self) -> Dict[str, Any]:
        """Deep copy of the current contents."""
        return copy.deepcopy(self._data)

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"DataStore(keys={sorted(self._data)})"
#
# ============================================================================
# SECTION 4: Template Resolution
# ============================================================================
# Function 4.1: stringify_value
# ============================================================================
#
def stringify_value(value: Any) -> str:
    """Text form of a value embedded in a larger template."""
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, indent=2, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


# ============================================================================
# Function 4.2: resolve_template
# ============================================================================
def resolve_template(template: str, store: DataStore) -> Any:
    """
    Resolves `{{dotted.key}}` placeholders against the store.

    A template that is exactly one placeholder returns the raw value with
    its type preserved, which lets image descriptors and other structured
    values pass through untouched. In mixed text every placeholder is
    stringified. Unresolved placeholders are left verbatim and logged.

    Args:
        template: Text containing zero or more placeholders.
        store: The run's DataStore.

    Returns:
        The raw value for a single placeholder, otherwise a string.
    """
    if not isinstance(template, str):
        return template

    single = SINGLE_PLACEHOLDER_PATTERN.match(template.strip())
    if single:
        value = store.lookup(single.group(1))
        if value is MISSING:
            logger.warning(f"Template placeholder '{{{{{single.group(1)}}}}}' did not resolve")
            return template
        return value

    def replace(match: "re.Match[str]") -> str:
        key = match.group(1)
        value = store.lookup(key)
        if value is MISSING or value is None:
            logger.warning(f"Template placeholder '{{{{{key}}}}}' resolved to no value; left as is")
            return match.group(0)
        return stringify_value(value)

    return PLACEHOLDER_PATTERN.sub(replace, template)

#
#
## End of Script
