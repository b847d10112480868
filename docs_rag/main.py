"""
Docs RAG - CLI Entry Point
---------------------------
Exposes Typer commands for operating the retrieval core.

Usage:
    python -m docs_rag.main unpack pages.zip --target data/pages
    python -m docs_rag.main index                 # Index every page not indexed yet
    python -m docs_rag.main query "What is a Flow?"
    python -m docs_rag.main query "..." --url https://kotlinlang.org/docs/flow.html
    python -m docs_rag.main status                # Show index statistics
"""
from __future__ import annotations

import json
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from docs_rag.documents.pages import PagesSource
from docs_rag.embedding.vector_store import FaissVectorStore
from docs_rag.errors import RagError
from docs_rag.indexing.coordinator import LOCAL_PATH_KEY
from docs_rag.settings import Settings, load_settings
from docs_rag.utils.logger import setup_logger

app = typer.Typer(
    name="docs-rag",
    help="Documentation assistant - chunking, indexing and retrieval CLI",
    add_completion=False,
)
console = Console()


# --- Helpers ------------------------------------------------------------------

def _settings(config: Optional[str]) -> Settings:
    try:
        settings = load_settings(config)
    except RagError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)
    setup_logger(log_level=settings.logging.level, log_file=settings.logging.file)
    return settings


def _pipeline(settings: Settings):
    from docs_rag.serving.pipeline import RetrievalPipeline

    try:
        return RetrievalPipeline(settings)
    except RagError as exc:
        console.print(f"[red]Could not start the retrieval pipeline:[/red] {exc.message}")
        raise typer.Exit(1)


_CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Path to config YAML (default: config/config.yaml if present)"
)


# --- Commands -----------------------------------------------------------------

@app.command()
def unpack(
    archive: str = typer.Argument(..., help="Zip archive of markdown pages"),
    target: str = typer.Option("data/pages", "--target", "-t", help="Directory to unpack into"),
) -> None:
    """Unpack a bundled archive of documentation pages."""
    try:
        source = PagesSource.from_archive(archive, target)
    except RagError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]OK: {len(source.list_all_paths())} pages unpacked to {target}[/green]")


@app.command()
def index(config: Optional[str] = _CONFIG_OPTION) -> None:
    """
    Chunk, embed and index every page that is not indexed yet.

    \b
    Pages already present in the index are skipped; a page that fails
    is reported and the run continues with the next one.
    """
    settings = _settings(config)
    with _pipeline(settings) as pipeline:
        with console.status("[cyan]Indexing documentation pages...[/cyan]"):
            try:
                report = pipeline.coordinator.ensure_corpus_indexed()
            except RagError as exc:
                console.print(f"[red]{exc.message}[/red]")
                raise typer.Exit(1)

        console.print(
            f"[green]OK: {len(report.indexed)} indexed[/green]  "
            f"[dim]{report.already_indexed} already indexed[/dim]  "
            f"[red]{len(report.failed)} failed[/red]  "
            f"| {len(pipeline.store)} chunks in index"
        )
        if report.failed:
            table = Table("Page", "Error", box=box.SIMPLE, header_style="bold dim")
            for path, error in report.failed.items():
                table.add_row(Text(path), Text(error))
            console.print(table)
            raise typer.Exit(1)


@app.command()
def query(
    text: str = typer.Argument(..., help="Question to retrieve documentation for"),
    url: Optional[str] = typer.Option(
        None, "--url", "-u", help="Restrict retrieval to this documentation page"
    ),
    json_out: bool = typer.Option(False, "--json", help="Print retrieved chunks as JSON"),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Print the context that would be injected into the prompt."""
    settings = _settings(config)
    with _pipeline(settings) as pipeline:
        try:
            chunks = pipeline.service.retrieve(text, url)
        except RagError as exc:
            console.print(f"[red]{exc.__class__.__name__}:[/red] {exc.message}")
            raise typer.Exit(1)

        if json_out:
            console.print_json(
                json.dumps(
                    [
                        {
                            "id": c.id,
                            "score": round(c.score, 6),
                            "metadata": c.metadata.as_fields(),
                            "text": c.text,
                        }
                        for c in chunks
                    ]
                )
            )
            return

        if not chunks:
            console.print("[yellow]No matching documentation found.[/yellow]")
            return

        from docs_rag.retrieval.service import format_context

        console.print(Panel(Text(format_context(chunks)), title="[bold green]Context[/bold green]", expand=True))


@app.command()
def status(config: Optional[str] = _CONFIG_OPTION) -> None:
    """Show what the vector index currently holds."""
    settings = _settings(config)
    try:
        store = FaissVectorStore(settings.index.dir)
    except RagError as exc:
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(1)

    with store:
        pages = store.list_distinct_values(LOCAL_PATH_KEY)
        console.print()
        console.print("[bold]Vector index[/bold]")
        console.print(f"  Directory  : {settings.index.dir}")
        console.print(f"  Generation : {store.generation}")
        console.print(f"  Segments   : {store.segment_count}")
        console.print(f"  Dimensions : {store.dimensions or '-'}")
        console.print(f"  Chunks     : [green]{len(store)}[/green]")
        console.print(f"  Pages      : [green]{len(pages)}[/green]")
        console.print()


# --- Entry Point --------------------------------------------------------------

if __name__ == "__main__":
    app()
