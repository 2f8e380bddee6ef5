# kernelpipe/cache.py
"""Filesystem cache of compiled kernel artifacts.

Layout::

    <scratch_root>/<precision tag>/<kernel stem>.ptx

An artifact counts as cached as soon as its file exists. There is no content
hash or timestamp check, so editing a kernel source does not invalidate the
PTX compiled from it; evict the entry (or clear the cache) after changing
sources.
"""

from __future__ import annotations

import atexit
import shutil
import threading
from enum import Enum
from importlib import resources as _resources
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Union

from . import config as _cfg
from .errors import ResourceMaterializationError
from .utils.logging import get_logger

log = get_logger(__name__)

ARTIFACT_SUFFIX = ".ptx"


class Precision(Enum):
    """Numeric width a kernel artifact is compiled for; the value is its cache tag."""

    SINGLE = "float"
    DOUBLE = "double"

    @property
    def tag(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: Union["Precision", str]) -> "Precision":
        if isinstance(value, Precision):
            return value
        key = str(value).strip().lower()
        aliases = {
            "float": cls.SINGLE,
            "single": cls.SINGLE,
            "f32": cls.SINGLE,
            "float32": cls.SINGLE,
            "double": cls.DOUBLE,
            "f64": cls.DOUBLE,
            "float64": cls.DOUBLE,
        }
        try:
            return aliases[key]
        except KeyError:
            raise ValueError(f"Unknown precision {value!r}; expected one of {sorted(aliases)}") from None


class ResourceProvider(Protocol):
    """Read-only source of kernel files, addressed by precision and file name."""

    def exists(self, precision: Precision, name: str) -> bool: ...

    def read_bytes(self, precision: Precision, name: str) -> bytes: ...


class PackageResources:
    """Kernel sources bundled in a package under ``kernels/<tag>/``."""

    def __init__(self, package: str = "kernelpipe", subdir: str = "kernels"):
        self.package = package
        self.subdir = subdir

    def _ref(self, precision: Precision, name: str):
        return _resources.files(self.package).joinpath(self.subdir).joinpath(precision.tag).joinpath(name)

    def exists(self, precision: Precision, name: str) -> bool:
        try:
            return self._ref(precision, name).is_file()
        except (FileNotFoundError, ModuleNotFoundError):
            return False

    def read_bytes(self, precision: Precision, name: str) -> bytes:
        return self._ref(precision, name).read_bytes()

    def __repr__(self) -> str:
        return f"PackageResources({self.package}/{self.subdir})"


class DirectoryResources:
    """Kernel sources laid out as ``<root>/<tag>/<name>`` on disk."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def exists(self, precision: Precision, name: str) -> bool:
        return (self.root / precision.tag / name).is_file()

    def read_bytes(self, precision: Precision, name: str) -> bytes:
        return (self.root / precision.tag / name).read_bytes()

    def __repr__(self) -> str:
        return f"DirectoryResources({self.root})"


# Sources extracted into a cache directory; removed at interpreter exit
# unless KERNELPIPE_KEEP_SOURCES is set.
_MATERIALIZED: set = set()
_MATERIALIZED_LOCK = threading.Lock()


def _cleanup_materialized() -> None:
    if _cfg.get("KERNELPIPE_KEEP_SOURCES"):
        return
    with _MATERIALIZED_LOCK:
        paths = list(_MATERIALIZED)
        _MATERIALIZED.clear()
    for p in paths:
        try:
            p.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.debug(f"Could not remove extracted source {p}: {e}")


atexit.register(_cleanup_materialized)


def _base_name(source_name: Union[str, Path]) -> str:
    name = Path(source_name).name
    if not name or name in (".", ".."):
        raise ValueError(f"Invalid kernel source name: {source_name!r}")
    return name


class ArtifactCache:
    """Locate, populate and evict compiled kernels under a scratch root."""

    def __init__(
        self,
        root: Optional[Union[str, Path]] = None,
        resources: Optional[ResourceProvider] = None,
    ):
        self.root = Path(root) if root is not None else Path(_cfg.get("KERNELPIPE_CACHE_DIR"))
        self.resources: ResourceProvider = resources if resources is not None else PackageResources()

    def directory(self, precision: Union[Precision, str]) -> Path:
        return self.root / Precision.parse(precision).tag

    def resolve(self, source_name: Union[str, Path], precision: Union[Precision, str]) -> Path:
        """Path of the artifact compiled from ``source_name``; it may not exist yet."""
        name = _base_name(source_name)
        return self.directory(precision) / Path(name).with_suffix(ARTIFACT_SUFFIX).name

    def source_path(self, source_name: Union[str, Path], precision: Union[Precision, str]) -> Path:
        return self.directory(precision) / _base_name(source_name)

    def locate(self, source_name: Union[str, Path], precision: Union[Precision, str]) -> Optional[Path]:
        path = self.resolve(source_name, precision)
        return path if path.exists() else None

    def populate(self, source_name: Union[str, Path], precision: Union[Precision, str]) -> Path:
        """Make sure the kernel source is present in the cache directory.

        A source already on disk is used as is. Otherwise it is copied out of
        the resource provider; a missing resource is an illegal state and
        raises ResourceMaterializationError.
        """
        prec = Precision.parse(precision)
        name = _base_name(source_name)
        target = self.source_path(name, prec)
        if target.exists():
            return target
        if not self.resources.exists(prec, name):
            raise ResourceMaterializationError(
                f"Unable to find kernel source {prec.tag}/{name} in {self.resources!r}"
            )
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.resources.read_bytes(prec, name))
        with _MATERIALIZED_LOCK:
            _MATERIALIZED.add(target)
        log.debug(f"Extracted {prec.tag}/{name} to {target}")
        return target

    def evict(self, source_name: Union[str, Path], precision: Union[Precision, str]) -> bool:
        """Remove the artifact and its extracted source. Returns True if anything was removed."""
        removed = False
        for p in (self.resolve(source_name, precision), self.source_path(source_name, precision)):
            if p.exists():
                p.unlink()
                removed = True
            with _MATERIALIZED_LOCK:
                _MATERIALIZED.discard(p)
        return removed

    def entries(self, precision: Optional[Union[Precision, str]] = None) -> Dict[str, List[Path]]:
        """Cached artifacts grouped by precision tag."""
        precs = [Precision.parse(precision)] if precision is not None else list(Precision)
        out: Dict[str, List[Path]] = {}
        for prec in precs:
            d = self.directory(prec)
            out[prec.tag] = sorted(d.glob(f"*{ARTIFACT_SUFFIX}")) if d.is_dir() else []
        return out

    def clear(self, precision: Optional[Union[Precision, str]] = None) -> int:
        """Remove one precision directory (or all of them). Returns the number of artifacts dropped."""
        precs = [Precision.parse(precision)] if precision is not None else list(Precision)
        n = 0
        for prec in precs:
            d = self.directory(prec)
            if not d.is_dir():
                continue
            n += len(list(d.glob(f"*{ARTIFACT_SUFFIX}")))
            shutil.rmtree(d)
            with _MATERIALIZED_LOCK:
                for p in [p for p in _MATERIALIZED if p.parent == d]:
                    _MATERIALIZED.discard(p)
        return n

    def __repr__(self) -> str:
        return f"ArtifactCache(root={str(self.root)!r})"


__all__ = [
    "ARTIFACT_SUFFIX",
    "Precision",
    "ResourceProvider",
    "PackageResources",
    "DirectoryResources",
    "ArtifactCache",
]
