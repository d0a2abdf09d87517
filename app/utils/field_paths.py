"""Dotted-path access into nested row dictionaries ("address.city")."""
from typing import Any, Dict

_MISSING = object()


def get_value_at_path(obj: Any, path: str, default: Any = None) -> Any:
    current = obj
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return default
        current = current[part]
    return current


def has_path(obj: Any, path: str) -> bool:
    return get_value_at_path(obj, path, _MISSING) is not _MISSING


def set_value_at_path(obj: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = obj
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


def delete_value_at_path(obj: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    current: Any = obj
    for part in parts[:-1]:
        if not isinstance(current, dict) or part not in current:
            return
        current = current[part]
    if isinstance(current, dict):
        current.pop(parts[-1], None)
