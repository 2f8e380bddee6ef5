"""Exception hierarchy for the compile/load/launch pipeline.

Every error raised by kernelpipe derives from KernelPipeError. Most also
derive from the builtin that best matches their category so callers can
catch them without importing this module (e.g. ``except LookupError``).
"""

from __future__ import annotations

from typing import Optional, Sequence


class KernelPipeError(Exception):
    """Base class for all kernelpipe failures."""


class DriverUnavailableError(KernelPipeError, RuntimeError):
    """PyCUDA is not installed or no CUDA driver could be initialized."""


class ResourceMaterializationError(KernelPipeError, RuntimeError):
    """A kernel source could not be found in the resource provider."""


class CompilationError(KernelPipeError):
    """nvcc exited non-zero. ``stderr`` holds its diagnostic output verbatim."""

    def __init__(
        self,
        message: str,
        *,
        stderr: str = "",
        stdout: str = "",
        returncode: Optional[int] = None,
        command: Sequence[str] = (),
    ):
        super().__init__(message)
        self.stderr = stderr
        self.stdout = stdout
        self.returncode = returncode
        self.command = list(command)


class CompilerNotFoundError(CompilationError):
    pass


class CompilationTimeoutError(CompilationError):
    pass


class CompilationInterrupted(KernelPipeError, OSError):
    """The wait for nvcc was interrupted; the child process has been killed.

    This is an OSError, so a broad ``except OSError`` also catches a Ctrl-C
    that arrived during compilation. The KeyboardInterrupt is kept as
    ``__cause__``; callers that must stop on interrupt can re-raise it::

        except CompilationInterrupted as e:
            raise e.__cause__
    """


class InvalidStateError(KernelPipeError, RuntimeError):
    """A runtime step was called out of order or with a released handle."""


class DeviceOrdinalError(KernelPipeError, ValueError):
    def __init__(self, ordinal: int, device_count: int):
        super().__init__(f"Invalid device ordinal {ordinal}: {device_count} CUDA device(s) available")
        self.ordinal = ordinal
        self.device_count = device_count


class ArtifactNotFoundError(KernelPipeError, FileNotFoundError):
    pass


class ModuleLoadError(KernelPipeError, RuntimeError):
    pass


class KernelNotFoundError(KernelPipeError, LookupError):
    def __init__(self, entry: str, artifact: str):
        super().__init__(f"Kernel entry point {entry!r} not found in module {artifact}")
        self.entry = entry
        self.artifact = artifact


class LaunchError(KernelPipeError, RuntimeError):
    pass


__all__ = [
    "KernelPipeError",
    "DriverUnavailableError",
    "ResourceMaterializationError",
    "CompilationError",
    "CompilerNotFoundError",
    "CompilationTimeoutError",
    "CompilationInterrupted",
    "InvalidStateError",
    "DeviceOrdinalError",
    "ArtifactNotFoundError",
    "ModuleLoadError",
    "KernelNotFoundError",
    "LaunchError",
]
