"""Synchronous kernel launch."""

from __future__ import annotations

import numbers
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence, Tuple, Union

from .driver import Dim3, Driver
from .errors import InvalidStateError, LaunchError
from .runtime import FunctionHandle
from .utils.logging import get_logger

log = get_logger(__name__)

DimLike = Union[int, Sequence[int]]


def as_dim3(value: DimLike, what: str) -> Dim3:
    """Normalize an int or 1-3 element sequence to an (x, y, z) tuple padded with 1."""
    if isinstance(value, numbers.Integral):
        dims: Tuple[int, ...] = (value,)
    else:
        dims = tuple(value)
    if not 1 <= len(dims) <= 3:
        raise ValueError(f"{what} must have 1 to 3 dimensions, got {value!r}")
    out = []
    for d in dims:
        if isinstance(d, bool) or int(d) != d or int(d) < 1:
            raise ValueError(f"{what} dimensions must be positive integers, got {value!r}")
        out.append(int(d))
    while len(out) < 3:
        out.append(1)
    return out[0], out[1], out[2]


@dataclass(frozen=True)
class LaunchConfig:
    """Grid/block geometry and arguments of a single launch.

    ``grid`` counts blocks, ``block`` counts threads per block. ``params`` are
    the kernel arguments in declaration order (numpy scalars, device
    allocations, ...); the driver packs them into the parameter buffer.
    """

    grid: DimLike
    block: DimLike
    shared_mem_bytes: int = 0
    stream: Optional[Any] = None
    params: Sequence[Any] = field(default_factory=tuple)

    def __post_init__(self):
        object.__setattr__(self, "grid", as_dim3(self.grid, "grid"))
        object.__setattr__(self, "block", as_dim3(self.block, "block"))
        if int(self.shared_mem_bytes) < 0:
            raise ValueError(f"shared_mem_bytes must be >= 0, got {self.shared_mem_bytes}")
        object.__setattr__(self, "shared_mem_bytes", int(self.shared_mem_bytes))
        object.__setattr__(self, "params", tuple(self.params))

    @property
    def threads(self) -> int:
        gx, gy, gz = self.grid
        bx, by, bz = self.block
        return gx * gy * gz * bx * by * bz


class KernelLauncher:
    """Submit a resolved kernel and block until the device has finished it."""

    def __init__(self, driver: Optional[Driver] = None):
        self._driver = driver

    def launch(self, function: FunctionHandle, config: LaunchConfig) -> float:
        """Launch ``function`` and synchronize. Returns the wall time in seconds."""
        if not isinstance(function, FunctionHandle):
            raise InvalidStateError(f"launch requires a FunctionHandle from get_function(); got {function!r}")
        if not function.alive:
            raise InvalidStateError(f"launch: module of kernel {function.name!r} has been unloaded")
        if function.context.owner_thread != threading.get_ident():
            raise InvalidStateError(f"launch: context of kernel {function.name!r} belongs to another thread")
        driver = self._driver or function.runtime.driver
        context = function.context.native
        where = f"{function.name} grid={config.grid} block={config.block} shared={config.shared_mem_bytes}"
        log.debug(f"Launching {where}")
        t0 = time.perf_counter()
        try:
            # another context may be current on this thread
            driver.activate(context)
            driver.launch(
                function.native,
                config.grid,
                config.block,
                config.shared_mem_bytes,
                config.stream,
                config.params,
            )
            driver.synchronize(context)
        except LaunchError as e:
            raise LaunchError(f"Launch of {where} failed: {e}") from e
        return time.perf_counter() - t0


__all__ = ["LaunchConfig", "KernelLauncher", "as_dim3"]
