"""End-to-end facade: source name -> compiled artifact -> function -> launch.

Example::

    from kernelpipe import KernelPipeline, LaunchConfig, Precision

    with KernelPipeline() as pipe:
        fn = pipe.load_function("add.cu", "vectorAdd", Precision.SINGLE)
        pipe.launch(fn, LaunchConfig(grid=128, block=256, params=args))
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from . import config as _cfg
from .cache import Precision
from .compiler import KernelBuilder
from .launcher import KernelLauncher, LaunchConfig
from .options import OptionTable
from .runtime import ContextHandle, DeviceRuntime, FunctionHandle, ModuleHandle


class KernelPipeline:
    def __init__(
        self,
        builder: Optional[KernelBuilder] = None,
        runtime: Optional[DeviceRuntime] = None,
        launcher: Optional[KernelLauncher] = None,
    ):
        self.builder = builder or KernelBuilder()
        self.runtime = runtime or DeviceRuntime()
        self.launcher = launcher or KernelLauncher()
        self._contexts: Dict[int, ContextHandle] = {}
        self._modules: Dict[Tuple[int, Path, Tuple[Any, ...]], ModuleHandle] = {}

    def context_for(self, device_ordinal: Optional[int] = None) -> ContextHandle:
        ordinal = int(_cfg.get("KERNELPIPE_DEVICE_INDEX") if device_ordinal is None else device_ordinal)
        ctx = self._contexts.get(ordinal)
        if ctx is None or not ctx.alive:
            device = self.runtime.initialize(ordinal)
            ctx = self.runtime.create_context(device)
            self._contexts[ordinal] = ctx
        return ctx

    def load_function(
        self,
        source_name: Union[str, Path],
        entry: str,
        precision: Union[Precision, str] = Precision.SINGLE,
        device_ordinal: Optional[int] = None,
        options: Optional[OptionTable] = None,
    ) -> FunctionHandle:
        """Compile (if needed), load and resolve ``entry`` from ``source_name``."""
        artifact = self.builder.ensure_compiled(source_name, precision)
        ctx = self.context_for(device_ordinal)
        # the same artifact JIT-loaded with different options is a different module
        key = (ctx.device.ordinal, artifact, options.fingerprint() if options is not None else ())
        module = self._modules.get(key)
        if module is None or not module.alive:
            module = self.runtime.load_module(ctx, artifact, options)
            self._modules[key] = module
        return self.runtime.get_function(module, entry)

    def launch(self, function: FunctionHandle, config: LaunchConfig) -> float:
        return self.launcher.launch(function, config)

    def run(
        self,
        source_name: Union[str, Path],
        entry: str,
        config: LaunchConfig,
        precision: Union[Precision, str] = Precision.SINGLE,
        device_ordinal: Optional[int] = None,
        options: Optional[OptionTable] = None,
    ) -> float:
        fn = self.load_function(source_name, entry, precision, device_ordinal, options)
        return self.launch(fn, config)

    def close(self) -> None:
        self._modules.clear()
        self._contexts.clear()
        self.runtime.close()

    def __enter__(self) -> "KernelPipeline":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["KernelPipeline"]
