import json
import subprocess

from click.testing import CliRunner

from kernelpipe.cli import main


def test_config_list_runs():
    runner = CliRunner()
    result = runner.invoke(main, ["config", "list"])
    assert result.exit_code == 0, result.output
    assert "KERNELPIPE_CACHE_DIR" in result.output


def test_config_list_json():
    result = CliRunner().invoke(main, ["config", "list", "--json"])
    assert result.exit_code == 0, result.output
    names = {row["name"] for row in json.loads(result.output)}
    assert {"KERNELPIPE_NVCC", "KERNELPIPE_LOG_LEVEL", "KERNELPIPE_NVCC_TIMEOUT"} <= names


def test_cache_path_follows_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("KERNELPIPE_CACHE_DIR", str(tmp_path / "c"))
    result = CliRunner().invoke(main, ["cache", "path", "--precision", "double"])
    assert result.exit_code == 0, result.output
    assert result.output.strip() == str(tmp_path / "c" / "double")


def test_compile_then_cached_then_evict(fake_nvcc, kernel_sources, tmp_path, monkeypatch):
    monkeypatch.setenv("KERNELPIPE_CACHE_DIR", str(tmp_path / "c"))
    runner = CliRunner()
    args = ["compile", "add.cu", "--resources", str(kernel_sources.root), "--nvcc", fake_nvcc]

    first = runner.invoke(main, args)
    assert first.exit_code == 0, first.output
    assert "compiled" in first.output
    assert (tmp_path / "c" / "float" / "add.ptx").exists()

    second = runner.invoke(main, args)
    assert second.exit_code == 0, second.output
    assert "cached" in second.output

    listed = runner.invoke(main, ["cache", "list", "--json"])
    assert json.loads(listed.output)["float"] == [str(tmp_path / "c" / "float" / "add.ptx")]

    evicted = runner.invoke(main, ["cache", "evict", "add.cu"])
    assert evicted.exit_code == 0
    assert not (tmp_path / "c" / "float" / "add.ptx").exists()


def test_compile_failure_exits_nonzero(fake_nvcc, tmp_path, monkeypatch):
    monkeypatch.setenv("KERNELPIPE_CACHE_DIR", str(tmp_path / "c"))
    res_root = tmp_path / "res"
    (res_root / "float").mkdir(parents=True)
    (res_root / "float" / "bad.cu").write_text("#error broken")
    result = CliRunner().invoke(main, ["compile", "bad.cu", "--resources", str(res_root), "--nvcc", fake_nvcc])
    assert result.exit_code == 1
    assert "kernel does not compile" in result.output


def test_cache_clear_on_empty_cache(tmp_path, monkeypatch):
    monkeypatch.setenv("KERNELPIPE_CACHE_DIR", str(tmp_path / "empty"))
    result = CliRunner().invoke(main, ["cache", "clear"])
    assert result.exit_code == 0
    assert "0 artifact" in result.output


class _CtrlCProc:
    def __init__(self, *args, **kwargs):
        pass

    def communicate(self, timeout=None):
        raise KeyboardInterrupt

    def kill(self):
        pass

    def wait(self, timeout=None):
        return -9


def test_compile_interrupt_exits_130(kernel_sources, tmp_path, monkeypatch):
    monkeypatch.setenv("KERNELPIPE_CACHE_DIR", str(tmp_path / "c"))
    monkeypatch.setattr(subprocess, "Popen", _CtrlCProc)
    result = CliRunner().invoke(main, ["compile", "add.cu", "--resources", str(kernel_sources.root)])
    assert result.exit_code == 130
    assert "Interrupted" in result.output
    assert not (tmp_path / "c" / "float" / "add.ptx").exists()


def test_cache_dir_flag_shows_as_override(tmp_path):
    result = CliRunner().invoke(main, ["--cache-dir", str(tmp_path / "x"), "config", "list", "--json"])
    assert result.exit_code == 0, result.output
    row = next(r for r in json.loads(result.output) if r["name"] == "KERNELPIPE_CACHE_DIR")
    assert row["current"] == str(tmp_path / "x")
    assert row["source"] == "override"
