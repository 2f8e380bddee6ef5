# kernelpipe/compiler.py
"""
Ahead-of-time kernel compilation.

NvccCompiler wraps one nvcc invocation (``-ptx``) as a blocking subprocess
with captured output and an optional timeout. KernelBuilder puts it behind
the ArtifactCache: a kernel is only compiled when its artifact is missing.
"""

from __future__ import annotations

import os
import struct
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple, Union

from . import config as _cfg
from .cache import ArtifactCache, Precision
from .errors import (
    CompilationError,
    CompilationInterrupted,
    CompilationTimeoutError,
    CompilerNotFoundError,
)
from .utils.logging import get_logger

log = get_logger(__name__)


def host_data_model() -> int:
    """Pointer width of the running interpreter, in bits (32 or 64)."""
    return struct.calcsize("P") * 8


def staging_path(artifact_path: Path) -> Path:
    """Per-process scratch name nvcc writes to before the artifact is published."""
    return artifact_path.with_name(f"{artifact_path.name}.tmp-{os.getpid()}")


@dataclass(frozen=True)
class CompileResult:
    source_path: Path
    artifact_path: Path
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_s: float = 0.0


class Compiler(Protocol):
    def compile(self, source_path: Path, artifact_path: Path) -> CompileResult: ...


@dataclass
class NvccCompiler:
    """Compile a .cu file to PTX by running nvcc.

    ``nvcc``, ``extra_flags`` and ``timeout`` default to the
    KERNELPIPE_NVCC, KERNELPIPE_NVCC_FLAGS and KERNELPIPE_NVCC_TIMEOUT
    settings. ``timeout=None`` waits for as long as nvcc runs.
    """

    nvcc: Optional[str] = None
    extra_flags: Optional[Sequence[str]] = None
    timeout: Optional[float] = None
    data_model: int = field(default_factory=host_data_model)

    def __post_init__(self):
        if self.nvcc is None:
            self.nvcc = str(_cfg.get("KERNELPIPE_NVCC") or "nvcc")
        if self.extra_flags is None:
            self.extra_flags = list(_cfg.get("KERNELPIPE_NVCC_FLAGS") or [])
        if self.timeout is None:
            self.timeout = _cfg.get("KERNELPIPE_NVCC_TIMEOUT")

    def command(self, source_path: Path, artifact_path: Path) -> List[str]:
        return [
            str(self.nvcc),
            f"-m{self.data_model}",
            "-ptx",
            *[str(f) for f in self.extra_flags or ()],
            str(source_path),
            "-o",
            str(artifact_path),
        ]

    def compile(self, source_path: Path, artifact_path: Path) -> CompileResult:
        source_path = Path(source_path)
        artifact_path = Path(artifact_path)
        if not source_path.exists():
            raise FileNotFoundError(f"Input file not found: {source_path}")
        artifact_path.parent.mkdir(parents=True, exist_ok=True)
        # nvcc writes next to the artifact; only a successful run is moved into place
        partial = staging_path(artifact_path)
        cmd = self.command(source_path, partial)
        try:
            stdout, stderr, returncode, duration = self._run(cmd, source_path)
            if returncode != 0:
                log.info(f"nvcc process exitValue {returncode}")
                log.info(f"errorMessage:\n{stderr}")
                log.info(f"outputMessage:\n{stdout}")
                raise CompilationError(
                    f"Could not create .ptx file: {stderr}",
                    stderr=stderr,
                    stdout=stdout,
                    returncode=returncode,
                    command=cmd,
                )
            if not partial.is_file():
                raise CompilationError(
                    f"nvcc exited with 0 but wrote no output to {partial}",
                    stderr=stderr,
                    stdout=stdout,
                    returncode=returncode,
                    command=cmd,
                )
            os.replace(partial, artifact_path)
        finally:
            if partial.exists():
                partial.unlink()

        log.info(f"Finished creating PTX file {artifact_path} in {duration:.2f}s")
        return CompileResult(
            source_path=source_path,
            artifact_path=artifact_path,
            command=cmd,
            returncode=returncode,
            stdout=stdout,
            stderr=stderr,
            duration_s=duration,
        )

    def _run(self, cmd: List[str], source_path: Path) -> Tuple[str, str, int, float]:
        log.info(f"Executing {' '.join(cmd)}")
        t0 = time.perf_counter()
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
            )
        except FileNotFoundError as e:
            raise CompilerNotFoundError(
                f"nvcc executable not found: {self.nvcc} (set KERNELPIPE_NVCC)",
                command=cmd,
            ) from e

        try:
            # communicate() drains both pipes before the exit code is read
            stdout, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            proc.kill()
            stdout, stderr = proc.communicate()
            raise CompilationTimeoutError(
                f"nvcc did not finish within {self.timeout}s: {stderr}",
                stderr=stderr,
                stdout=stdout,
                command=cmd,
            ) from e
        except KeyboardInterrupt as e:
            proc.kill()
            proc.wait()
            raise CompilationInterrupted(f"Interrupted while waiting for nvcc output: {source_path}") from e
        return stdout, stderr, proc.returncode, time.perf_counter() - t0


class KernelBuilder:
    """Compile-on-miss front end of the artifact cache."""

    def __init__(self, cache: Optional[ArtifactCache] = None, compiler: Optional[Compiler] = None):
        self.cache = cache or ArtifactCache()
        self.compiler: Compiler = compiler or NvccCompiler()
        self.last_result: Optional[CompileResult] = None

    def ensure_compiled(self, source_name: Union[str, Path], precision: Union[Precision, str] = Precision.SINGLE) -> Path:
        """Return the artifact path for ``source_name``, compiling it if it is not cached."""
        prec = Precision.parse(precision)
        artifact = self.cache.resolve(source_name, prec)
        if artifact.exists():
            log.debug(f"Cache hit: {artifact}")
            return artifact
        source = self.cache.populate(source_name, prec)
        self.last_result = self.compiler.compile(source, artifact)
        return artifact


__all__ = [
    "CompileResult",
    "Compiler",
    "NvccCompiler",
    "KernelBuilder",
    "host_data_model",
    "staging_path",
]
