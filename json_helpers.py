"""
JSON Serialisation Helpers
==========================
Serialisation utilities for values that aren't natively JSON-serialisable
(datetimes, enums, pydantic models, sets) as they appear in rule, variable
and history payloads.

This module provides:
1. Safe serialisation of domain types
2. Recursive handling of nested structures (dicts, lists)
3. Fallback serialisation for unknown types
"""
import json
import logging
from typing import Any
from datetime import datetime, date
from enum import Enum

from pydantic import BaseModel

logger = logging.getLogger("json_helpers")


def serialise_value(value: Any) -> Any:
    """
    Recursively serialise a value to be JSON-compatible.

    Handles:
    - pydantic models (dumped by alias)
    - Nested structures (dict, list, tuple, set)
    - datetime/date objects
    - Enums
    - bytes

    Args:
        value: Any value that needs to be JSON-serialisable

    Returns:
        JSON-serialisable representation of the value
    """
    if value is None:
        return None

    # Fast path
    if isinstance(value, (str, int, float, bool)):
        return value

    if isinstance(value, BaseModel):
        return serialise_value(value.model_dump(by_alias=True, exclude_none=True))

    if isinstance(value, bytes):
        try:
            return value.decode('utf-8')
        except UnicodeDecodeError:
            return value.hex()

    if isinstance(value, (datetime, date)):
        return value.isoformat()

    if isinstance(value, Enum):
        return value.value

    if isinstance(value, dict):
        return {serialise_key(k): serialise_value(v) for k, v in value.items()}

    if isinstance(value, (list, tuple, set)):
        return [serialise_value(item) for item in value]

    # Last resort: convert to string
    try:
        return str(value)
    except Exception as e:
        logger.warning(f"Failed to serialise {type(value).__name__}: {e}")
        return f"<{type(value).__name__}>"


def serialise_key(key: Any) -> str:
    """Convert any key type to a string for JSON dict keys."""
    if key is None:
        return "null"
    if isinstance(key, str):
        return key
    if isinstance(key, Enum):
        return str(key.value)
    return str(key)


def safe_json_dumps(obj: Any, **kwargs) -> str:
    """
    Serialise any object to a JSON string.

    Drop-in replacement for json.dumps() that handles domain types.
    """
    return json.dumps(serialise_value(obj), ensure_ascii=False, **kwargs)
