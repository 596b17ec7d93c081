"""Small helpers for picking values out of untyped JSON payloads."""

from __future__ import annotations

import json
import logging
from typing import Any

log = logging.getLogger(__name__)


def as_count(value: Any) -> int | None:
    """Return *value* as a non-negative token count, or ``None``.

    Booleans are rejected even though they are ints in Python.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int) and value >= 0:
        return value
    if isinstance(value, float) and value >= 0 and value.is_integer():
        return int(value)
    return None


def parse_tool_arguments(raw: Any) -> dict[str, Any]:
    """Decode tool-call arguments; anything unparsable becomes ``{}``."""
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str) or not raw.strip():
        return {}
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        log.debug("Tool arguments are not valid JSON; using empty arguments")
        return {}
    return decoded if isinstance(decoded, dict) else {}
