import json as _json
import os
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape

from . import config as _cfg
from .cache import ArtifactCache, DirectoryResources, Precision
from .compiler import KernelBuilder, NvccCompiler
from .errors import CompilationInterrupted, KernelPipeError
from .utils.logging import set_level

console = Console()

_PRECISIONS = click.Choice(["float", "double", "single", "f32", "f64"], case_sensitive=False)


def _load_env():
    # Load environment variables from a .env file if present
    if not _cfg.get("KERNELPIPE_LOAD_DOTENV"):
        return
    root = Path(__file__).resolve().parents[1]
    for p in (Path.cwd() / ".env", root / ".env"):
        if not p.is_file():
            continue
        for line in p.read_text().splitlines():
            s = line.strip()
            if not s or s.startswith("#") or "=" not in s:
                continue
            k, v = s.split("=", 1)
            k = k.strip()
            v = v.strip().strip('"').strip("'")
            if k and v and k not in os.environ:
                os.environ[k] = v


def _cache(root: Optional[str], resources: Optional[str] = None) -> ArtifactCache:
    res = DirectoryResources(resources) if resources else None
    return ArtifactCache(root=root, resources=res)


@click.group()
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Artifact cache root. Equivalent to KERNELPIPE_CACHE_DIR.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log at DEBUG level.")
def main(cache_dir: Optional[str], verbose: bool):
    """kernelpipe CLI: compile, cache and inspect CUDA kernels."""
    _load_env()
    if verbose:
        set_level("DEBUG")
    if cache_dir:
        _cfg.set("KERNELPIPE_CACHE_DIR", cache_dir)


@main.group()
def config():
    """Inspect KERNELPIPE_* settings."""
    pass


@config.command("list")
@click.option("--json", "as_json", is_flag=True, help="Emit machine-readable JSON.")
def config_list(as_json: bool):
    rows = _cfg.describe()
    if as_json:
        click.echo(_json.dumps(rows, indent=2, default=str))
        return
    category = None
    for row in rows:
        if row["category"] != category:
            category = row["category"]
            console.print(f"[bold cyan]{category}[/bold cyan]")
        current = escape(repr(row["current"]))
        origin = "" if row["source"] == "default" else f" [magenta]({row['source']})[/magenta]"
        console.print(f"  {row['name']} = {current}{origin}  [dim]{escape(row['description'])}[/dim]", soft_wrap=True)


@main.command("compile")
@click.argument("source")
@click.option("--precision", type=_PRECISIONS, default="float", show_default=True)
@click.option(
    "--resources",
    type=click.Path(exists=True, file_okay=False),
    default=None,
    help="Directory laid out as <float|double>/<source>; defaults to the bundled kernels.",
)
@click.option("--nvcc", default=None, help="nvcc executable. Equivalent to KERNELPIPE_NVCC.")
@click.option("--timeout", type=float, default=None, help="Seconds before nvcc is killed.")
def compile_source(
    source: str,
    precision: str,
    resources: Optional[str],
    nvcc: Optional[str],
    timeout: Optional[float],
):
    """Compile SOURCE to PTX unless it is already cached."""
    builder = KernelBuilder(_cache(None, resources), NvccCompiler(nvcc=nvcc, timeout=timeout))
    prec = Precision.parse(precision)
    hit = builder.cache.locate(source, prec) is not None
    try:
        path = builder.ensure_compiled(source, prec)
    except CompilationInterrupted:
        console.print("[yellow]Interrupted.[/yellow] nvcc was stopped, nothing was cached.")
        raise SystemExit(130)
    except KernelPipeError as e:
        console.print(f"[red]Compilation failed:[/red] {escape(str(e))}", soft_wrap=True)
        raise SystemExit(1)
    state = "cached" if hit else "compiled"
    console.print(f"[green]{state}[/green] {escape(str(path))}", soft_wrap=True)


@main.group()
def cache():
    """Inspect and manage the compiled artifact cache."""
    pass


@cache.command("path")
@click.option("--precision", type=_PRECISIONS, default=None)
def cache_path(precision: Optional[str]):
    c = _cache(None)
    click.echo(str(c.directory(precision) if precision else c.root))


@cache.command("list")
@click.option("--json", "as_json", is_flag=True, help="Emit machine-readable JSON.")
def cache_list(as_json: bool):
    data = {tag: [str(p) for p in paths] for tag, paths in _cache(None).entries().items()}
    if as_json:
        click.echo(_json.dumps(data, indent=2))
        return
    if not any(data.values()):
        console.print("(cache is empty)")
        return
    for tag, paths in data.items():
        for p in paths:
            console.print(f"- {tag}: {p}")


@cache.command("evict")
@click.argument("source")
@click.option("--precision", type=_PRECISIONS, default="float", show_default=True)
def cache_evict(source: str, precision: str):
    if _cache(None).evict(source, precision):
        console.print(f"[green]Evicted:[/green] {source} ({Precision.parse(precision).tag})")
    else:
        console.print(f"[yellow]Not cached:[/yellow] {source}")


@cache.command("clear")
@click.option("--precision", type=_PRECISIONS, default=None)
def cache_clear(precision: Optional[str]):
    n = _cache(None).clear(precision)
    console.print(f"[green]Cache cleared[/green] ({n} artifact(s) removed).")


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Emit machine-readable JSON.")
def info(as_json: bool):
    """Report CUDA driver and device availability."""
    from .driver import PycudaDriver

    data = {"devices": [], "error": None}
    try:
        drv = PycudaDriver()
        drv.init()
        for i in range(drv.device_count()):
            data["devices"].append({"ordinal": i, "name": drv.device_name(drv.get_device(i))})
    except KernelPipeError as e:
        data["error"] = str(e)
    if as_json:
        click.echo(_json.dumps(data, indent=2))
        return
    console.print("[bold cyan]kernelpipe device report[/bold cyan]")
    if data["error"]:
        console.print(f"[yellow]CUDA unavailable:[/yellow] {data['error']}")
    for d in data["devices"]:
        console.print(f"  [{d['ordinal']}] {d['name']}")


if __name__ == "__main__":
    main()
