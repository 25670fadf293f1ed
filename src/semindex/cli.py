"""Command line interface for semindex."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from semindex.config import AppConfig
from semindex.errors import SemIndexError
from semindex.index.jobs import JobTracker
from semindex.index.storage import SQLiteVectorStore
from semindex.semantic_index import SemanticIndex

console = Console()
app = typer.Typer(help="semindex - local semantic search over source trees")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _config(data_dir: Optional[Path], model: Optional[str] = None) -> AppConfig:
    return AppConfig.from_env(data_dir=data_dir, model_name=model)


def _snippet(path: Path, start: int, end: int, limit: int = 180) -> str:
    try:
        with path.open("rb") as handle:
            handle.seek(start)
            data = handle.read(min(end - start, limit * 4))
    except OSError:
        return ""
    return data.decode("utf-8", errors="replace").replace("\n", " ")[:limit]


@app.command()
def index(
    directory: Path = typer.Argument(
        ..., help="Directory to index.", exists=True, file_okay=False, resolve_path=True
    ),
    data_dir: Path = typer.Option(None, "--data-dir", help="Index data directory"),
    model: str = typer.Option(None, help="Sentence-transformer model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Index a directory and wait for the job to finish."""
    _setup_logging(verbose)
    config = _config(data_dir, model)

    async def _run():
        semantic_index = await SemanticIndex.new(config.data_dir, config=config)
        try:
            handle = await semantic_index.index_directory(directory)
            return await handle.wait()
        finally:
            await semantic_index.aclose()

    console.print(f"Indexing [bold]{directory}[/bold] into {config.resolve_db_path()}...")
    status = asyncio.run(_run())
    console.print(
        f"{status.state.value}: embedded {status.embedded}, failed {status.failed}, "
        f"outstanding {status.outstanding}"
    )
    if status.error:
        console.print(f"[red]{status.error}[/red]")
        raise typer.Exit(code=1)


@app.command()
def search(
    directory: Path = typer.Argument(..., help="Indexed directory", resolve_path=True),
    query: str = typer.Argument(..., help="Query text"),
    n: int = typer.Option(10, "-n", help="Number of results to display"),
    data_dir: Path = typer.Option(None, "--data-dir", help="Index data directory"),
    model: str = typer.Option(None, help="Sentence-transformer model name"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging"),
) -> None:
    """Execute a semantic search within a directory."""
    _setup_logging(verbose)
    config = _config(data_dir, model)
    if not config.resolve_db_path().exists():
        raise typer.BadParameter(f"Index not found: {config.resolve_db_path()}")

    async def _run():
        semantic_index = await SemanticIndex.new(config.data_dir, config=config)
        try:
            return await semantic_index.search_directory(directory, n, query)
        finally:
            await semantic_index.aclose()

    try:
        results = asyncio.run(_run())
    except SemIndexError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    if not results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("File")
    table.add_column("Bytes")
    table.add_column("Snippet")
    for result in results:
        table.add_row(
            f"{result.score:.4f}",
            str(result.path),
            f"{result.start_byte}-{result.end_byte}",
            _snippet(result.path, result.start_byte, result.end_byte),
        )
    console.print(table)


@app.command()
def status(
    directory: Path = typer.Argument(..., help="Directory", resolve_path=True),
    data_dir: Path = typer.Option(None, "--data-dir", help="Index data directory"),
) -> None:
    """Show the last known indexing state of a directory."""
    config = _config(data_dir)
    if not config.resolve_db_path().exists():
        console.print("[yellow]Index not found.[/yellow]")
        return

    # Reading state needs no embedding model.
    store = SQLiteVectorStore(config.resolve_db_path())
    try:
        tracker = JobTracker()
        tracker.restore(store.load_jobs())
        job_status = tracker.status(directory)
        outstanding = store.pending_count(directory)
    finally:
        store.close()
    console.print(f"{job_status.state.value} (outstanding: {outstanding})")
    if job_status.error:
        console.print(f"[yellow]{job_status.error}[/yellow]")


@app.command()
def prune(
    data_dir: Path = typer.Option(None, "--data-dir", help="Index data directory"),
) -> None:
    """Remove files that no longer exist on disk."""
    config = _config(data_dir)
    if not config.resolve_db_path().exists():
        console.print("[yellow]Index not found, nothing to prune.[/yellow]")
        return

    store = SQLiteVectorStore(config.resolve_db_path())
    try:
        removed = store.remove_missing_files()
    finally:
        store.close()
    console.print(f"Removed {removed} missing files.")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    data_dir: Path = typer.Option(None, "--data-dir", help="Index data directory"),
) -> None:
    """Start the HTTP service."""
    import uvicorn

    if data_dir is not None:
        os.environ["SEMINDEX_DATA_DIR"] = str(data_dir)
    console.print(f"Starting semindex service on http://{host}:{port}")
    uvicorn.run("semindex.web.app:app", host=host, port=port, reload=False, log_level="info")
