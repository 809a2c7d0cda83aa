"""
Snapshot diffing for audit records.

``compute_diff(old, new)``:
    - no old snapshot  -> {"type": "created", "fields": [keys of new]}
    - no new snapshot  -> {"type": "deleted", "fields": [keys of old]}
    - both             -> {"type": "updated", "modified": [...],
                           "added": [...], "removed": [...]}
                          or None when nothing differs
    - neither          -> None

Values are compared structurally after canonicalisation, so
``Decimal("100")`` and ``Decimal("100.00")`` are the same amount and key
order inside nested mappings does not matter.
"""

from collections.abc import Mapping, Sequence
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


def json_safe(value: Any) -> Any:
    """Convert a snapshot value into something a JSON column accepts."""
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Enum):
        return json_safe(value.value)
    if isinstance(value, Decimal):
        return _decimal_text(value)
    if isinstance(value, float):
        return _decimal_text(Decimal(str(value)))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray)):
        return [json_safe(v) for v in value]
    return str(value)


def _decimal_text(value: Decimal) -> str:
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def _canonical(value: Any) -> Any:
    safe = json_safe(value)
    if isinstance(safe, dict):
        return tuple(sorted((k, _canonical(v)) for k, v in safe.items()))
    if isinstance(safe, list):
        return tuple(_canonical(v) for v in safe)
    return safe


def compute_diff(
    old: Mapping[str, Any] | None,
    new: Mapping[str, Any] | None,
) -> dict[str, Any] | None:
    if old is None and new is None:
        return None
    if old is None:
        return {"type": "created", "fields": list(new.keys())}
    if new is None:
        return {"type": "deleted", "fields": list(old.keys())}

    modified: list[dict[str, Any]] = []
    added: list[dict[str, Any]] = []
    removed: list[dict[str, Any]] = []

    keys = list(old.keys()) + [k for k in new.keys() if k not in old]
    for key in keys:
        if key not in old:
            added.append({"field": key, "value": json_safe(new[key])})
        elif key not in new:
            removed.append({"field": key, "value": json_safe(old[key])})
        elif _canonical(old[key]) != _canonical(new[key]):
            modified.append(
                {"field": key, "from": json_safe(old[key]), "to": json_safe(new[key])}
            )

    if not (modified or added or removed):
        return None

    return {
        "type": "updated",
        "modified": modified,
        "added": added,
        "removed": removed,
    }
