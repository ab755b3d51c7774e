"""tabrecall models command - list embedding model presets."""

import click
from rich.console import Console
from rich.table import Table

from tabrecall.cli.utils import get_config
from tabrecall.index._internal.model import MODEL_PRESETS


@click.command()
@click.pass_context
def models_command(ctx: click.Context) -> None:
    """List the embedding model presets."""
    current = get_config(ctx).model.preset

    table = Table(show_header=True, header_style="bold")
    table.add_column("Preset")
    table.add_column("Dim", justify="right")
    table.add_column("Source")
    table.add_column("Notes")
    for name, preset in MODEL_PRESETS.items():
        marker = " [green](active)[/green]" if name == current else ""
        table.add_row(f"{name}{marker}", str(preset.dimension), preset.repo_id, preset.description)
    Console().print(table)
