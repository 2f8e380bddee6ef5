"""Thin adapter over the CUDA driver API.

DeviceRuntime and KernelLauncher talk to the driver only through the
methods below, so tests (and machines without a GPU) can substitute any
object with the same shape. PycudaDriver is the production implementation;
pycuda is imported on first use so that importing kernelpipe never requires
a CUDA toolkit.

Driver failures are reported as:
  * LookupError     - entry point missing from a module
  * ModuleLoadError - the driver rejected an artifact
  * LaunchError     - launch or synchronize failed
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Protocol, Sequence, Tuple

from .errors import DriverUnavailableError, LaunchError, ModuleLoadError
from .options import OptionTable
from .utils.logging import get_logger

log = get_logger(__name__)

Dim3 = Tuple[int, int, int]


class Driver(Protocol):
    def init(self) -> None: ...

    def device_count(self) -> int: ...

    def get_device(self, ordinal: int) -> Any: ...

    def device_name(self, device: Any) -> str: ...

    def create_context(self, device: Any, flags: int = 0) -> Any: ...

    def activate(self, context: Any) -> None: ...

    def destroy_context(self, context: Any) -> None: ...

    def load_module(self, context: Any, path: Path, options: Optional[OptionTable] = None) -> Any: ...

    def unload_module(self, module: Any) -> None: ...

    def get_function(self, module: Any, name: str) -> Any: ...

    def launch(
        self,
        function: Any,
        grid: Dim3,
        block: Dim3,
        shared_mem_bytes: int,
        stream: Any,
        params: Sequence[Any],
    ) -> None: ...

    def synchronize(self, context: Any) -> None: ...


def is_cuda_available() -> bool:
    try:
        drv = PycudaDriver()
        drv.init()
        return drv.device_count() > 0
    except Exception:
        return False


class PycudaDriver:
    """Driver backed by ``pycuda.driver``."""

    def __init__(self):
        try:
            import pycuda.driver as cuda  # noqa: PLC0415
        except ImportError as e:
            raise DriverUnavailableError("pycuda not available; install kernelpipe[cuda]") from e
        self._cuda = cuda
        self._initialized = False

    def init(self) -> None:
        if self._initialized:
            return
        try:
            self._cuda.init()
        except self._cuda.Error as e:
            raise DriverUnavailableError(f"cuInit failed: {e}") from e
        self._initialized = True

    def device_count(self) -> int:
        return int(self._cuda.Device.count())

    def get_device(self, ordinal: int) -> Any:
        return self._cuda.Device(ordinal)

    def device_name(self, device: Any) -> str:
        return str(device.name())

    def create_context(self, device: Any, flags: int = 0) -> Any:
        # make_context() pushes the new context onto this thread's stack
        return device.make_context(flags=flags)

    def activate(self, context: Any) -> None:
        current = self._cuda.Context.get_current()
        if current == context:
            return
        if current is not None:
            self._cuda.Context.pop()
        context.push()

    def destroy_context(self, context: Any) -> None:
        self.activate(context)
        self._cuda.Context.pop()
        context.detach()

    def load_module(self, context: Any, path: Path, options: Optional[OptionTable] = None) -> Any:
        self.activate(context)
        try:
            if options is not None and len(options):
                return self._cuda.module_from_buffer(Path(path).read_bytes(), options=options.as_pycuda_options())
            return self._cuda.module_from_file(str(path))
        except self._cuda.Error as e:
            raise ModuleLoadError(f"Could not load module {path}: {e}") from e

    def unload_module(self, module: Any) -> None:
        # pycuda has no explicit unload; the CUmodule goes when the Module is collected
        log.debug(f"Releasing module {module!r}")

    def get_function(self, module: Any, name: str) -> Any:
        try:
            return module.get_function(name)
        except self._cuda.Error as e:
            raise LookupError(name) from e

    def launch(self, function, grid, block, shared_mem_bytes, stream, params) -> None:
        try:
            function(*params, grid=tuple(grid), block=tuple(block), shared=int(shared_mem_bytes), stream=stream)
        except self._cuda.Error as e:
            raise LaunchError(str(e)) from e

    def synchronize(self, context: Any) -> None:
        self.activate(context)
        try:
            self._cuda.Context.synchronize()
        except self._cuda.Error as e:
            raise LaunchError(f"Kernel execution failed: {e}") from e


__all__ = ["Driver", "PycudaDriver", "is_cuda_available", "Dim3"]
