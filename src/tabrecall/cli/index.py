"""tabrecall index command - index documents from a JSON file."""

from __future__ import annotations

import json
from pathlib import Path

import click
from rich.console import Console

from tabrecall.cli.utils import open_indexer, run
from tabrecall.index.models import ExtractedContent
from tabrecall.index.ops import StaticExtractor


def load_documents(path: Path) -> dict[str, ExtractedContent]:
    """Read ``{owner_id: {url, title, text}}`` from a JSON file."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise click.ClickException(f"Cannot read {path}: {e}") from e
    if not isinstance(data, dict):
        raise click.ClickException(f"{path}: expected an object keyed by document id")

    documents: dict[str, ExtractedContent] = {}
    for owner_id, entry in data.items():
        if not isinstance(entry, dict):
            raise click.ClickException(f"{path}: entry {owner_id!r} is not an object")
        documents[str(owner_id)] = ExtractedContent(
            text_content=str(entry.get("text", "")),
            title=str(entry.get("title", "")),
            url=str(entry.get("url", "")),
        )
    return documents


@click.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def index_command(ctx: click.Context, path: Path) -> None:
    """Index documents from a JSON file.

    PATH holds an object mapping each document id to
    {"url": ..., "title": ..., "text": ...}.
    """
    console = Console(stderr=True)
    documents = load_documents(path)
    extractor = StaticExtractor(documents)

    async def index_all() -> dict[str, int]:
        async with open_indexer(ctx, extractor=extractor) as indexer:
            return {owner_id: await indexer.index_document(owner_id) for owner_id in documents}

    counts = run(index_all())
    for owner_id, chunks in counts.items():
        if chunks:
            console.print(f"  [green]✓[/green] {owner_id}: {chunks} chunks")
        else:
            console.print(f"  [yellow]-[/yellow] {owner_id}: skipped")

    indexed = sum(1 for c in counts.values() if c)
    console.print(f"\n[bold]{indexed}[/bold] of {len(counts)} documents indexed")
