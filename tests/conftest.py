import os
import re
import stat
import sys
from pathlib import Path

import pytest

from kernelpipe.cache import ArtifactCache, DirectoryResources
from kernelpipe.compiler import CompileResult, KernelBuilder
from kernelpipe.errors import LaunchError, ModuleLoadError

VECTOR_ADD_CU = """extern "C"
__global__ void vectorAdd(int n, float *a, float *b, float *sum)
{
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i < n)
    {
        sum[i] = a[i] + b[i];
    }
}
"""


class FakeCompiler:
    """Writes a tiny PTX-like file listing the __global__ functions of the source."""

    def __init__(self):
        self.invocations = 0
        self.calls = []

    def compile(self, source_path, artifact_path):
        self.invocations += 1
        self.calls.append((Path(source_path), Path(artifact_path)))
        names = re.findall(r"__global__\s+void\s+(\w+)", Path(source_path).read_text())
        artifact_path.parent.mkdir(parents=True, exist_ok=True)
        body = "".join(f".visible .entry {n}()\n" for n in names)
        artifact_path.write_text(".version 7.0\n" + body)
        return CompileResult(
            source_path=Path(source_path),
            artifact_path=Path(artifact_path),
            command=["fake-nvcc", str(source_path)],
            returncode=0,
        )


class FakeModule:
    def __init__(self, path, entries):
        self.path = path
        self.entries = entries


class FakeDriver:
    """In-memory stand-in for PycudaDriver that records every call in order."""

    def __init__(self, devices=("Fake GPU 0",)):
        self.devices = list(devices)
        self.calls = []
        self.contexts = []
        self.launches = []
        self.load_options = []
        self.fail_launch = None
        self.fail_sync = None
        self.current = None

    def init(self):
        self.calls.append("init")

    def device_count(self):
        return len(self.devices)

    def get_device(self, ordinal):
        return ("device", ordinal)

    def device_name(self, device):
        return self.devices[device[1]]

    def create_context(self, device, flags=0):
        ctx = {"device": device, "flags": flags}
        self.contexts.append(ctx)
        self.current = ctx
        self.calls.append("create_context")
        return ctx

    def activate(self, context):
        self.calls.append("activate")
        self.current = context

    def destroy_context(self, context):
        self.calls.append("destroy_context")

    def load_module(self, context, path, options=None):
        self.calls.append("load_module")
        self.load_options.append(options)
        entries = re.findall(r"\.entry\s+(\w+)", Path(path).read_text())
        if not entries:
            raise ModuleLoadError(f"Could not load module {path}: CUDA_ERROR_INVALID_PTX")
        return FakeModule(path, entries)

    def unload_module(self, module):
        self.calls.append("unload_module")

    def get_function(self, module, name):
        self.calls.append("get_function")
        if name not in module.entries:
            raise LookupError(name)
        return ("function", name)

    def launch(self, function, grid, block, shared_mem_bytes, stream, params):
        self.calls.append("launch")
        if self.fail_launch:
            raise LaunchError(self.fail_launch)
        self.launches.append(
            {
                "function": function,
                "context": self.current,
                "grid": grid,
                "block": block,
                "shared": shared_mem_bytes,
                "stream": stream,
                "params": params,
            }
        )

    def synchronize(self, context):
        self.calls.append("synchronize")
        if self.fail_sync:
            raise LaunchError(self.fail_sync)


FAKE_NVCC = r"""#!/bin/sh
out=""
src=""
while [ $# -gt 0 ]; do
  case "$1" in
    -o) out="$2"; shift 2 ;;
    *) src="$1"; shift ;;
  esac
done
# real nvcc may leave partial output behind when it fails or is killed
printf ".version 7.0\n.visible .entr" > "$out"
if grep -q "#error" "$src"; then
  echo "$src(1): error: kernel does not compile" >&2
  exit 2
fi
if grep -q "SLOW" "$src"; then
  exec sleep 5
fi
if grep -q "NOOUT" "$src"; then
  rm -f "$out"
  exit 0
fi
echo "compiling $src"
echo ".visible .entry vectorAdd()" > "$out"
"""


@pytest.fixture
def kernel_sources(tmp_path):
    root = tmp_path / "kernel_src"
    for tag in ("float", "double"):
        (root / tag).mkdir(parents=True)
        (root / tag / "add.cu").write_text(VECTOR_ADD_CU)
    return DirectoryResources(root)


@pytest.fixture
def artifact_cache(tmp_path, kernel_sources):
    return ArtifactCache(root=tmp_path / "cache", resources=kernel_sources)


@pytest.fixture
def fake_compiler():
    return FakeCompiler()


@pytest.fixture
def builder(artifact_cache, fake_compiler):
    return KernelBuilder(artifact_cache, fake_compiler)


@pytest.fixture
def fake_driver():
    return FakeDriver(devices=("Fake GPU 0", "Fake GPU 1"))


@pytest.fixture
def ptx_file(tmp_path):
    p = tmp_path / "add.ptx"
    p.write_text(".version 7.0\n.visible .entry vectorAdd()\n")
    return p


@pytest.fixture
def fake_nvcc(tmp_path):
    if sys.platform == "win32":
        pytest.skip("fake nvcc is a POSIX shell script")
    p = tmp_path / "bin" / "nvcc"
    p.parent.mkdir()
    p.write_text(FAKE_NVCC)
    p.chmod(p.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(p)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path):
    # keep tests away from the user's real cache and settings
    for k in list(os.environ):
        if k.startswith("KERNELPIPE_"):
            monkeypatch.delenv(k, raising=False)
    monkeypatch.setenv("KERNELPIPE_CACHE_DIR", str(tmp_path / "env_cache"))
    monkeypatch.setenv("KERNELPIPE_LOAD_DOTENV", "0")
