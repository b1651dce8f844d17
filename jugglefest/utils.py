import os
import re
from typing import Any, Tuple
from dataclasses import is_dataclass, asdict

# Names such as "C1970" or "J12": everything up to a trailing run of digits
_NUMERIC_SUFFIX = re.compile(r"^(.*?)(\d+)$")


def _ensure_data_dirs() -> None:
    base_dir = _project_root()
    os.makedirs(os.path.join(base_dir, "data/inputs"), exist_ok=True)
    os.makedirs(os.path.join(base_dir, "data/processed"), exist_ok=True)
    os.makedirs(os.path.join(base_dir, "data/outputs"), exist_ok=True)


def _project_root() -> str:
    """Return absolute path to the project root (one level up from this file's directory)."""
    return os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))


def _is_url(path: str) -> bool:
    return path.startswith(("http://", "https://"))


def _resolve_path(path: str) -> str:
    """Resolve relative paths to the project root if they don't exist as given. URLs pass through."""
    if not path or _is_url(path):
        return path
    if os.path.exists(path):
        return path
    return os.path.join(_project_root(), path)


def _name_sort_key(name: str) -> Tuple[str, int, str]:
    """Sort key comparing a trailing number by value, so that "C9" sorts before "C10"."""
    match = _NUMERIC_SUFFIX.match(name)
    if match:
        return (match.group(1), int(match.group(2)), name)
    return (name, -1, name)


def _to_json_compatible(obj: Any) -> Any:
    """Recursively convert dataclasses and containers to JSON-compatible primitives."""
    if is_dataclass(obj):
        return {k: _to_json_compatible(v) for k, v in asdict(obj).items()}
    if isinstance(obj, (list, tuple)):
        return [_to_json_compatible(v) for v in obj]
    if isinstance(obj, dict):
        return {k: _to_json_compatible(v) for k, v in obj.items()}
    return obj
