"""tabrecall stats command - show index statistics."""

import json

import click

from tabrecall.cli.utils import open_indexer, run
from tabrecall.index.models import IndexStats


@click.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
@click.pass_context
def stats_command(ctx: click.Context, as_json: bool) -> None:
    """Show index statistics."""

    async def collect() -> IndexStats:
        async with open_indexer(ctx, load_model=False) as indexer:
            return await indexer.get_stats()

    stats = run(collect())

    if as_json:
        click.echo(json.dumps(stats.to_dict()))
        return

    click.echo(f"Documents: {stats.total_owners}")
    click.echo(f"Chunks: {stats.total_documents}")
    click.echo(f"Estimated size: {stats.index_size_bytes / 1024:.1f} KiB")
