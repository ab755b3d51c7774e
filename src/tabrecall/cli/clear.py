"""tabrecall clear command - discard the whole index."""

import click
from rich.console import Console

from tabrecall.cli.utils import get_config, open_indexer, run


@click.command()
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
@click.pass_context
def clear_command(ctx: click.Context, yes: bool) -> None:
    """Remove every indexed document.

    The stored graph and document table are replaced with empty ones.
    """
    console = Console(stderr=True)
    db_path = get_config(ctx).storage.db_path

    if not yes and not click.confirm(
        f"Delete all indexed documents in {db_path}? This cannot be undone", default=False
    ):
        console.print("[dim]Cancelled[/dim]")
        return

    async def clear() -> None:
        async with open_indexer(ctx, load_model=False) as indexer:
            await indexer.clear_all()

    run(clear())
    console.print("[green]Index cleared[/green]")
