"""tabrecall remove command - drop one document from the index."""

import click

from tabrecall.cli.utils import open_indexer, run


@click.command()
@click.argument("owner_id")
@click.pass_context
def remove_command(ctx: click.Context, owner_id: str) -> None:
    """Remove every chunk of OWNER_ID from the index."""

    async def remove() -> int:
        async with open_indexer(ctx, load_model=False) as indexer:
            return await indexer.remove_document(owner_id)

    removed = run(remove())
    if removed:
        click.echo(f"Removed {removed} chunks for {owner_id}")
    else:
        click.echo(f"Nothing indexed for {owner_id}")
