"""Centralized canonical JSON serialization.

One function for byte-stable JSON used everywhere: state file writes,
plan and apply reports, attribute comparison in the plan engine.
"""

import json
from typing import Any


def canonical_dumps(obj: Any, indent: int | None = None) -> str:
    """
    Canonical JSON serialization.

    Rules:
    - UTF-8 encoding
    - Sorted keys
    - Stable separators (",", ":") when not indented
    - No trailing whitespace

    Args:
        obj: Python object to serialize
        indent: Optional indent for human-readable files (state file)

    Returns:
        Canonical JSON string
    """
    if indent is None:
        return json.dumps(
            obj,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False  # UTF-8 encoding
        )
    return json.dumps(
        obj,
        sort_keys=True,
        indent=indent,
        separators=(",", ": "),
        ensure_ascii=False
    )


def canonical_equal(a: Any, b: Any) -> bool:
    """Compare two JSON values by their canonical serialization.

    Dict key order never matters; list order does.
    """
    return canonical_dumps(a) == canonical_dumps(b)
