"""
Structural differ.

Payloads are JSON trees. Each node is classified into a ValueKind so that
comparisons dispatch on the kind rather than on loose truthiness: ``True``
never equals ``1`` and a kind change between two values is always a
difference. ``MISSING`` marks an absent field and is distinct from JSON null.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence


class _Missing:
    """Sentinel for a field that does not exist."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False

    def __copy__(self):
        return self

    def __deepcopy__(self, memo):
        return self


MISSING: Any = _Missing()


class ValueKind(str, Enum):
    """Kind of a JSON value."""

    MISSING = "missing"
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def kind_of(value: Any) -> ValueKind:
    """Classify a decoded JSON value."""
    if value is MISSING:
        return ValueKind.MISSING
    if value is None:
        return ValueKind.NULL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return ValueKind.BOOL
    if isinstance(value, (int, float)):
        return ValueKind.NUMBER
    if isinstance(value, str):
        return ValueKind.STRING
    if isinstance(value, (list, tuple)):
        return ValueKind.ARRAY
    if isinstance(value, dict):
        return ValueKind.OBJECT
    raise TypeError(f"Not a JSON value: {type(value).__name__}")


def values_equal(a: Any, b: Any) -> bool:
    """Deep structural equality over JSON values."""
    kind = kind_of(a)
    if kind != kind_of(b):
        return False

    if kind in (ValueKind.MISSING, ValueKind.NULL):
        return True
    if kind == ValueKind.ARRAY:
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    if kind == ValueKind.OBJECT:
        if a.keys() != b.keys():
            return False
        return all(values_equal(a[key], b[key]) for key in a)
    return a == b


def escape_key(key: str) -> str:
    """Escape a field name for use as one path segment."""
    return key.replace("\\", "\\\\").replace(".", "\\.")


def join_path(parts: Sequence[str]) -> str:
    """Dotted path from raw field names."""
    return ".".join(escape_key(part) for part in parts)


def split_path(path: str) -> list[str]:
    """
    Field names of a dotted path.

    A backslash escapes the next character, so ``a\\.b`` names the single
    field ``a.b``.
    """
    parts: list[str] = []
    current: list[str] = []
    chars = iter(path)
    for char in chars:
        if char == "\\":
            current.append(next(chars, "\\"))
        elif char == ".":
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


def _collect(value: Any, parts: list[str], max_depth: Optional[int]) -> set[str]:
    if kind_of(value) != ValueKind.OBJECT or not value:
        return {join_path(parts)} if parts else set()
    if parts and max_depth is not None and len(parts) >= max_depth:
        return {join_path(parts)}

    paths: set[str] = set()
    for key, child in value.items():
        paths |= _collect(child, parts + [key], max_depth)
    return paths


def collect_leaf_paths(value: Any, prefix: str = "", max_depth: Optional[int] = None) -> set[str]:
    """
    Dotted paths of every leaf under an object.

    Arrays, scalars, null and empty objects are leaves; non-empty objects
    are descended into. Objects at max_depth are treated as leaves. Dots
    and backslashes inside field names are escaped with a backslash.
    """
    return _collect(value, split_path(prefix) if prefix else [], max_depth)


def get_value_at_path(obj: Any, path: str) -> Any:
    """Value at a dotted path, or MISSING if any segment is absent."""
    current = obj
    for part in split_path(path):
        if kind_of(current) != ValueKind.OBJECT or part not in current:
            return MISSING
        current = current[part]
    return current


def set_value_at_path(obj: dict[str, Any], path: str, value: Any) -> None:
    """
    Set a value at a dotted path in place, creating intermediate objects.

    Setting MISSING removes the field.
    """
    parts = split_path(path)
    current = obj
    for part in parts[:-1]:
        if kind_of(current.get(part, MISSING)) != ValueKind.OBJECT:
            if value is MISSING:
                return
            current[part] = {}
        current = current[part]

    if value is MISSING:
        current.pop(parts[-1], None)
    else:
        current[parts[-1]] = value


@dataclass
class VersionDiff:
    """Added, modified and removed fields between two payloads."""

    added: dict[str, Any] = field(default_factory=dict)
    modified: dict[str, dict[str, Any]] = field(default_factory=dict)
    removed: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.modified or self.removed)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "added": self.added,
            "modified": self.modified,
            "removed": self.removed,
        }


def calculate_diff(old: dict[str, Any], new: dict[str, Any], nested: bool = False) -> VersionDiff:
    """
    Compare two payloads.

    Args:
        old: Earlier payload
        new: Later payload
        nested: Report dotted leaf paths instead of top-level fields

    Returns:
        VersionDiff keyed by field name (or dotted path when nested)
    """
    if nested:
        keys = sorted(collect_leaf_paths(old) | collect_leaf_paths(new))

        def lookup(payload: dict[str, Any], key: str) -> Any:
            return get_value_at_path(payload, key)
    else:
        keys = list(old.keys()) + [k for k in new.keys() if k not in old]

        def lookup(payload: dict[str, Any], key: str) -> Any:
            return payload.get(key, MISSING)

    diff = VersionDiff()
    for key in keys:
        old_value = lookup(old, key)
        new_value = lookup(new, key)
        if old_value is MISSING and new_value is not MISSING:
            diff.added[key] = new_value
        elif new_value is MISSING and old_value is not MISSING:
            diff.removed[key] = old_value
        elif not values_equal(old_value, new_value):
            diff.modified[key] = {"old": old_value, "new": new_value}
    return diff
