# kernelpipe/runtime.py
"""Explicit device/context/module/function lifecycle.

Acquisition order is strict::

    initialize(ordinal) -> create_context(device) -> load_module(context, path)
        -> get_function(module, name)

Every step takes the handle produced by the previous one and refuses handles
that were released, came from another runtime, or are of the wrong kind
(InvalidStateError). Release runs in reverse: destroying a context first
unloads its modules, which invalidates their functions. Unloading drops the
runtime's references to the native module and its functions; with pycuda the
CUmodule is freed when the last reference goes, so callers should not keep
native objects of their own past unload_module or destroy_context.

Thread safety: the CUDA driver keeps the "current context" per thread and
device/context setup touches process-wide state. All driver calls made here
are serialized by a module-level lock, and a context may only be used from
the thread that created it.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from pathlib import Path
from typing import Any, Iterator, List, Optional, Union

from .driver import Driver, PycudaDriver
from .errors import (
    ArtifactNotFoundError,
    DeviceOrdinalError,
    InvalidStateError,
    KernelNotFoundError,
)
from .options import OptionTable
from .utils.logging import get_logger

log = get_logger(__name__)

_DRIVER_LOCK = threading.RLock()


class RuntimeState(IntEnum):
    UNINITIALIZED = 0
    DEVICE_SELECTED = 1
    CONTEXT_CREATED = 2
    MODULE_LOADED = 3
    FUNCTION_RESOLVED = 4


@dataclass(eq=False)
class DeviceHandle:
    runtime: "DeviceRuntime" = field(repr=False)
    ordinal: int
    name: str
    native: Any = field(repr=False)
    released: bool = False

    @property
    def alive(self) -> bool:
        return not self.released


@dataclass(eq=False)
class ContextHandle:
    device: DeviceHandle
    native: Any = field(repr=False)
    flags: int = 0
    owner_thread: int = field(default_factory=threading.get_ident)
    released: bool = False

    @property
    def runtime(self) -> "DeviceRuntime":
        return self.device.runtime

    @property
    def alive(self) -> bool:
        return not self.released and self.device.alive


@dataclass(eq=False)
class ModuleHandle:
    context: ContextHandle
    path: Path
    native: Any = field(repr=False)
    released: bool = False

    @property
    def runtime(self) -> "DeviceRuntime":
        return self.context.runtime

    @property
    def alive(self) -> bool:
        return not self.released and self.context.alive


@dataclass(eq=False)
class FunctionHandle:
    module: ModuleHandle
    name: str
    native: Any = field(repr=False)

    @property
    def runtime(self) -> "DeviceRuntime":
        return self.module.runtime

    @property
    def context(self) -> ContextHandle:
        return self.module.context

    @property
    def alive(self) -> bool:
        return self.module.alive


class DeviceRuntime:
    """Owns the native handles it creates and releases them in reverse order."""

    def __init__(self, driver: Optional[Driver] = None):
        self._driver = driver
        self._devices: List[DeviceHandle] = []
        self._contexts: List[ContextHandle] = []
        self._modules: List[ModuleHandle] = []
        self._functions: List[FunctionHandle] = []

    @property
    def driver(self) -> Driver:
        if self._driver is None:
            self._driver = PycudaDriver()
        return self._driver

    @property
    def state(self) -> RuntimeState:
        if any(f.alive for f in self._functions):
            return RuntimeState.FUNCTION_RESOLVED
        if any(m.alive for m in self._modules):
            return RuntimeState.MODULE_LOADED
        if any(c.alive for c in self._contexts):
            return RuntimeState.CONTEXT_CREATED
        if any(d.alive for d in self._devices):
            return RuntimeState.DEVICE_SELECTED
        return RuntimeState.UNINITIALIZED

    # precondition checks

    def _check_owned(self, handle: Any, kind: type, step: str, needs: str) -> None:
        if not isinstance(handle, kind):
            raise InvalidStateError(f"{step} requires a {kind.__name__} from {needs}; got {handle!r}")
        if handle.runtime is not self:
            raise InvalidStateError(f"{step}: {kind.__name__} belongs to a different DeviceRuntime")
        if not handle.alive:
            raise InvalidStateError(f"{step}: {kind.__name__} has already been released")

    def _check_thread(self, context: ContextHandle, step: str) -> None:
        if context.owner_thread != threading.get_ident():
            raise InvalidStateError(
                f"{step}: context was created on thread {context.owner_thread} "
                f"and cannot be used from thread {threading.get_ident()}"
            )

    # acquisition

    def initialize(self, ordinal: int = 0) -> DeviceHandle:
        """Initialize the driver and select device ``ordinal``."""
        ordinal = int(ordinal)
        for d in self._devices:
            if d.alive and d.ordinal == ordinal:
                return d
        with _DRIVER_LOCK:
            self.driver.init()
            count = self.driver.device_count()
            if not 0 <= ordinal < count:
                raise DeviceOrdinalError(ordinal, count)
            native = self.driver.get_device(ordinal)
            name = self.driver.device_name(native)
        handle = DeviceHandle(runtime=self, ordinal=ordinal, name=name, native=native)
        self._devices.append(handle)
        log.info(f"Selected CUDA device {ordinal}: {name}")
        return handle

    def create_context(self, device: DeviceHandle, flags: int = 0) -> ContextHandle:
        self._check_owned(device, DeviceHandle, "create_context", "initialize()")
        with _DRIVER_LOCK:
            native = self.driver.create_context(device.native, int(flags))
        ctx = ContextHandle(device=device, native=native, flags=int(flags))
        self._contexts.append(ctx)
        log.debug(f"Created context on device {device.ordinal} (flags={flags})")
        return ctx

    def load_module(
        self,
        context: ContextHandle,
        artifact_path: Union[str, Path],
        options: Optional[OptionTable] = None,
    ) -> ModuleHandle:
        """Load a compiled artifact into ``context``; ``options`` are passed to the JIT."""
        self._check_owned(context, ContextHandle, "load_module", "create_context()")
        self._check_thread(context, "load_module")
        path = Path(artifact_path)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Compiled kernel not found: {path}")
        if options is not None:
            log.debug(f"Loading {path} with {options}")
        with _DRIVER_LOCK:
            native = self.driver.load_module(context.native, path, options)
        module = ModuleHandle(context=context, path=path, native=native)
        self._modules.append(module)
        log.debug(f"Loaded module {path}")
        return module

    def get_function(self, module: ModuleHandle, name: str) -> FunctionHandle:
        self._check_owned(module, ModuleHandle, "get_function", "load_module()")
        self._check_thread(module.context, "get_function")
        try:
            native = self.driver.get_function(module.native, name)
        except LookupError as e:
            raise KernelNotFoundError(name, str(module.path)) from e
        fn = FunctionHandle(module=module, name=name, native=native)
        self._functions.append(fn)
        return fn

    # release

    def unload_module(self, module: ModuleHandle) -> None:
        if module.released:
            return
        self._check_owned(module, ModuleHandle, "unload_module", "load_module()")
        with _DRIVER_LOCK:
            self.driver.unload_module(module.native)
        module.released = True
        # pycuda frees the CUmodule once nothing references it, functions included
        for f in self._functions:
            if f.module is module:
                f.native = None
        module.native = None
        self._functions = [f for f in self._functions if f.module is not module]
        self._modules = [m for m in self._modules if m is not module]

    def destroy_context(self, context: ContextHandle) -> None:
        if context.released:
            return
        self._check_owned(context, ContextHandle, "destroy_context", "create_context()")
        for m in reversed([m for m in self._modules if m.context is context]):
            self.unload_module(m)
        with _DRIVER_LOCK:
            self.driver.destroy_context(context.native)
        context.released = True
        self._contexts = [c for c in self._contexts if c is not context]
        log.debug(f"Destroyed context on device {context.device.ordinal}")

    def release_device(self, device: DeviceHandle) -> None:
        if device.released:
            return
        for c in reversed([c for c in self._contexts if c.device is device]):
            self.destroy_context(c)
        device.released = True
        self._devices = [d for d in self._devices if d is not device]

    def close(self) -> None:
        """Release every handle, newest first."""
        for d in reversed(list(self._devices)):
            self.release_device(d)

    def __enter__(self) -> "DeviceRuntime":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # scoped acquisition

    @contextmanager
    def context_scope(self, device: DeviceHandle, flags: int = 0) -> Iterator[ContextHandle]:
        ctx = self.create_context(device, flags)
        try:
            yield ctx
        finally:
            self.destroy_context(ctx)

    @contextmanager
    def module_scope(
        self,
        context: ContextHandle,
        artifact_path: Union[str, Path],
        options: Optional[OptionTable] = None,
    ) -> Iterator[ModuleHandle]:
        module = self.load_module(context, artifact_path, options)
        try:
            yield module
        finally:
            self.unload_module(module)


__all__ = [
    "RuntimeState",
    "DeviceHandle",
    "ContextHandle",
    "ModuleHandle",
    "FunctionHandle",
    "DeviceRuntime",
]
