"""Central environment configuration for kernelpipe.

Provides typed accessors, a registry of known KERNELPIPE_* variables, and
helpers to introspect the current effective configuration. All os.environ
lookups in the package go through here so tests can stub them with
monkeypatch.setenv.
"""

from __future__ import annotations

import os
import tempfile
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional


@dataclass(frozen=True)
class EnvVarMeta:
    name: str
    description: str
    default: Any
    parser: Callable[[str], Any]
    choices: Optional[List[str]] = None
    category: str = "general"


def _parse_bool(val: str) -> bool:
    return str(val).lower() in ("1", "true", "yes", "on")


def _parse_int(val: str) -> int:
    try:
        return int(val)
    except (TypeError, ValueError):
        return 0


def _parse_optional_float(val: str) -> Optional[float]:
    s = str(val).strip()
    if not s:
        return None
    try:
        f = float(s)
    except ValueError:
        return None
    return f if f > 0 else None


def _parse_flags(val: str) -> List[str]:
    return [v for v in str(val).split() if v]


def _identity(val: str) -> str:
    return val


_DEFAULT_CACHE_DIR = os.path.join(tempfile.gettempdir(), "kernelpipe", "kernels")


_REGISTRY: Dict[str, EnvVarMeta] = {
    # Process behavior
    "KERNELPIPE_LOAD_DOTENV": EnvVarMeta(
        name="KERNELPIPE_LOAD_DOTENV",
        description="Load .env files when the CLI starts (set 0 to disable)",
        default="1",
        parser=_parse_bool,
        category="general",
    ),
    "KERNELPIPE_LOG_LEVEL": EnvVarMeta(
        name="KERNELPIPE_LOG_LEVEL",
        description="Override log verbosity (DEBUG,INFO,WARNING,ERROR)",
        default="INFO",
        parser=_identity,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        category="logging",
    ),
    # Artifact cache
    "KERNELPIPE_CACHE_DIR": EnvVarMeta(
        name="KERNELPIPE_CACHE_DIR",
        description="Scratch root holding <precision>/<kernel>.ptx artifacts",
        default=_DEFAULT_CACHE_DIR,
        parser=_identity,
        category="cache",
    ),
    "KERNELPIPE_KEEP_SOURCES": EnvVarMeta(
        name="KERNELPIPE_KEEP_SOURCES",
        description="Keep kernel sources extracted into the cache after exit",
        default="0",
        parser=_parse_bool,
        category="cache",
    ),
    # Compiler
    "KERNELPIPE_NVCC": EnvVarMeta(
        name="KERNELPIPE_NVCC",
        description="Path or name of the nvcc executable",
        default="nvcc",
        parser=_identity,
        category="compiler",
    ),
    "KERNELPIPE_NVCC_FLAGS": EnvVarMeta(
        name="KERNELPIPE_NVCC_FLAGS",
        description="Extra whitespace-separated flags appended to the nvcc command",
        default="",
        parser=_parse_flags,
        category="compiler",
    ),
    "KERNELPIPE_NVCC_TIMEOUT": EnvVarMeta(
        name="KERNELPIPE_NVCC_TIMEOUT",
        description="Seconds to wait for nvcc before killing it (empty = no limit)",
        default="",
        parser=_parse_optional_float,
        category="compiler",
    ),
    # Device
    "KERNELPIPE_DEVICE_INDEX": EnvVarMeta(
        name="KERNELPIPE_DEVICE_INDEX",
        description="Default CUDA device ordinal used by the pipeline and CLI",
        default="0",
        parser=_parse_int,
        category="device",
    ),
}


# Runtime overrides registry (set via set()) for introspection.
_OVERRIDES: Dict[str, Any] = {}
_SET_LOCK = threading.Lock()


def get(name: str) -> Any:
    meta = _REGISTRY.get(name)
    if not meta:
        return os.environ.get(name)
    raw = os.environ.get(name, str(meta.default))
    try:
        return meta.parser(raw)
    except Exception:
        return meta.parser(str(meta.default))


def as_dict(include_unset: bool = False) -> Dict[str, Any]:
    data = {}
    for k in _REGISTRY:
        if os.environ.get(k) is None and not include_unset:
            continue
        data[k] = get(k)
    return data


def _source(name: str) -> str:
    # an override only counts while the environment still holds its value
    if name in _OVERRIDES and os.environ.get(name) == str(_OVERRIDES[name]):
        return "override"
    return "env" if name in os.environ else "default"


def describe() -> List[Dict[str, Any]]:
    """One row per registered setting, ordered by (category, name).

    ``source`` tells where ``current`` came from: ``override`` (set() in this
    process, e.g. the --cache-dir CLI flag), ``env`` or ``default``.
    """
    rows = [
        {
            "name": meta.name,
            "category": meta.category,
            "default": meta.default,
            "current": get(meta.name),
            "source": _source(meta.name),
            "description": meta.description,
            "choices": meta.choices or [],
        }
        for meta in _REGISTRY.values()
    ]
    return sorted(rows, key=lambda r: (r["category"], r["name"]))


def set(name: str, value: Any) -> None:
    """Set an environment variable (stringifying value) and record the override."""
    with _SET_LOCK:
        os.environ[name] = str(value)
        _OVERRIDES[name] = value


def overrides() -> Dict[str, Any]:
    return dict(_OVERRIDES)


__all__ = ["get", "as_dict", "describe", "set", "overrides", "EnvVarMeta"]
