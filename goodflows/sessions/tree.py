"""
goodflows.sessions.tree — Dot-path addressing into nested dicts.

``"findings.all"`` names ``tree["findings"]["all"]``.  Writes create
missing intermediate dicts; reads never do.  A missing path reads as
``ABSENT``, which is distinct from a stored ``None``.
"""

from __future__ import annotations

from typing import Any, Dict, List

from goodflows.core.errors import ValidationError


class _Absent:
    """Marker for 'nothing stored at this path'."""

    _instance = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"

    def __copy__(self) -> "_Absent":
        return self

    def __deepcopy__(self, memo: Dict[int, Any]) -> "_Absent":
        return self


ABSENT = _Absent()


def split_path(path: str) -> List[str]:
    if not isinstance(path, str) or not path:
        raise ValidationError("Context path must be a non-empty string", [f"path={path!r}"])
    parts = path.split(".")
    if any(not p for p in parts):
        raise ValidationError("Context path has an empty segment", [f"path={path!r}"])
    return parts


def get_path(tree: Dict[str, Any], path: str, default: Any = ABSENT) -> Any:
    current: Any = tree
    for part in split_path(path):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def set_path(tree: Dict[str, Any], path: str, value: Any) -> None:
    parts = split_path(path)
    current = tree
    for i, part in enumerate(parts[:-1]):
        nxt = current.get(part)
        if nxt is None and part not in current:
            nxt = current[part] = {}
        elif not isinstance(nxt, dict):
            prefix = ".".join(parts[: i + 1])
            raise ValidationError(
                f"Cannot descend into non-mapping at {prefix!r}", [f"path={path!r}"]
            )
        current = nxt
    current[parts[-1]] = value
