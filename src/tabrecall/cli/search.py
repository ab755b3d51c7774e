"""tabrecall search command - semantic search over indexed documents."""

import json

import click
from rich.console import Console
from rich.table import Table

from tabrecall.cli.utils import open_indexer, run
from tabrecall.config.constants import SEARCH_DEFAULT_TOP_K, SEARCH_MAX_TOP_K
from tabrecall.index.models import SearchResult


@click.command()
@click.argument("query")
@click.option(
    "-k",
    "--top-k",
    type=click.IntRange(1, SEARCH_MAX_TOP_K),
    default=SEARCH_DEFAULT_TOP_K,
    show_default=True,
    help="Number of documents to return",
)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def search_command(ctx: click.Context, query: str, top_k: int, as_json: bool) -> None:
    """Search indexed documents by meaning."""

    async def do_search() -> list[SearchResult]:
        async with open_indexer(ctx) as indexer:
            return await indexer.search(query, top_k)

    results = run(do_search())

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in results], ensure_ascii=False))
        return

    console = Console()
    if not results:
        console.print("[dim]No results[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Score", justify="right")
    table.add_column("Document")
    table.add_column("Snippet")
    for result in results:
        label = result.title or result.owner_id
        if result.url:
            label = f"{label}\n[dim]{result.url}[/dim]"
        table.add_row(f"{result.similarity:.3f}", label, result.snippet)
    console.print(table)
