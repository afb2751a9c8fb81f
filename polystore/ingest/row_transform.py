"""
Flatten/unflatten between nested JSON records and flat relational rows.

Object keys are joined with ``_`` (``addr.city`` -> ``addr_city``); arrays
are stored as JSON text under their own key. ``unflatten`` splits keys on
the same separator and decodes JSON text back into values, so keys that
already contain ``_`` come back split into nested objects.
"""

import json
from typing import Any, Dict, Iterable, Optional

from polystore.common.exceptions import InputError
from polystore.ingest.profiler import DEFAULT_MAX_DEPTH
from polystore.ingest.schema_generator import SYNTHETIC_COLUMNS

SEPARATOR = "_"


def _to_json_text(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def flatten(
    record: Dict[str, Any],
    separator: str = SEPARATOR,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> Dict[str, Any]:
    """
    Flatten a nested record into a single-level row.

    - ``None`` passes through.
    - Lists become JSON text under the unmodified key.
    - Dicts are expanded with the parent key prepended. Empty dicts, and
      dicts deeper than ``max_depth``, are kept as JSON text.
    - Other scalars pass through.

    Raises:
        InputError: If ``record`` is not a dict
    """
    if not isinstance(record, dict):
        raise InputError(f"Cannot flatten a {type(record).__name__}; expected an object")

    row: Dict[str, Any] = {}
    _flatten_into(row, record, "", separator, max_depth, depth=1)
    return row


def _flatten_into(row, obj, prefix, separator, max_depth, depth):
    for key, value in obj.items():
        column = f"{prefix}{separator}{key}" if prefix else str(key)

        if isinstance(value, list):
            row[column] = _to_json_text(value)
        elif isinstance(value, dict):
            if not value or depth >= max_depth:
                row[column] = _to_json_text(value)
            else:
                _flatten_into(row, value, column, separator, max_depth, depth + 1)
        else:
            row[column] = value


def _decode(value: Any, compound_only: bool) -> Any:
    if not isinstance(value, str):
        return value
    try:
        decoded = json.loads(value)
    except ValueError:
        return value
    if compound_only and not isinstance(decoded, (dict, list)):
        return value
    return decoded


def unflatten(
    row: Dict[str, Any],
    separator: str = SEPARATOR,
    compound_only: bool = False,
    drop: Optional[Iterable[str]] = SYNTHETIC_COLUMNS,
) -> Dict[str, Any]:
    """
    Rebuild a nested record from a flat row.

    Every string value that parses as JSON is replaced by the parsed value,
    so a plain string such as ``"123"`` comes back as the number 123. With
    ``compound_only`` only strings decoding to a list or dict are replaced.
    Keys in ``drop`` (the synthetic identity and timestamp columns by
    default) are removed.

    A path that runs into a non-object value already placed at that
    position keeps its flat key at the top level.
    """
    dropped = set(drop or ())
    result: Dict[str, Any] = {}

    for key, value in row.items():
        if key in dropped:
            continue

        value = _decode(value, compound_only)
        parts = key.split(separator) if separator in key else [key]

        # Leading/trailing separators produce empty segments; keep such keys flat
        if any(part == "" for part in parts):
            result[key] = value
            continue

        current = result
        placed = True
        for part in parts[:-1]:
            child = current.setdefault(part, {})
            if not isinstance(child, dict):
                placed = False
                break
            current = child

        leaf = parts[-1]
        if placed and isinstance(current.get(leaf), dict) and not isinstance(value, dict):
            placed = False

        if placed:
            current[leaf] = value
        else:
            result[key] = value

    return result
