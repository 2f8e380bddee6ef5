"""
Top-level kernelpipe package exports (lightweight).

Public symbols are imported lazily on first access so that `import kernelpipe`
stays cheap and never touches pycuda or the CUDA driver.
"""
from __future__ import annotations

import importlib
from typing import Any

__version__ = "0.1.0"

_EXPORTS = {
  "OptionTable": "options",
  "OptionKind": "options",
  "JitOption": "options",
  "ArtifactCache": "cache",
  "Precision": "cache",
  "PackageResources": "cache",
  "DirectoryResources": "cache",
  "NvccCompiler": "compiler",
  "KernelBuilder": "compiler",
  "CompileResult": "compiler",
  "DeviceRuntime": "runtime",
  "RuntimeState": "runtime",
  "KernelLauncher": "launcher",
  "LaunchConfig": "launcher",
  "KernelPipeline": "pipeline",
  "PycudaDriver": "driver",
  "is_cuda_available": "driver",
  "errors": None,
  "config": None,
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:  # lazy attribute loader
  if name not in _EXPORTS:
    raise AttributeError(f"module 'kernelpipe' has no attribute {name!r}")
  submodule = _EXPORTS[name]
  if submodule is None:
    value = importlib.import_module(f"{__name__}.{name}")
  else:
    value = getattr(importlib.import_module(f"{__name__}.{submodule}"), name)
  # Cache on the package module to avoid repeated imports
  globals()[name] = value
  return value
