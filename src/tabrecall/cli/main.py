"""TabRecall CLI - tabrecall command."""

from pathlib import Path

import click

from tabrecall.cli.clear import clear_command
from tabrecall.cli.index import index_command
from tabrecall.cli.models import models_command
from tabrecall.cli.remove import remove_command
from tabrecall.cli.search import search_command
from tabrecall.cli.stats import stats_command
from tabrecall.config.loader import load_config
from tabrecall.core.errors import ConfigurationError
from tabrecall.core.logging import configure_logging
from tabrecall.daemon.lifecycle import IndexContext


@click.group()
@click.version_option(version="0.1.0", prog_name="tabrecall")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML config file (default: ~/.config/tabrecall/config.yaml)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Path | None) -> None:
    """TabRecall - semantic search over the pages you have open."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e

    logging_config = config.logging
    if verbose:
        logging_config = logging_config.model_copy(update={"level": "DEBUG"})
    configure_logging(config=logging_config)

    ctx.obj["verbose"] = verbose
    ctx.obj["config"] = config
    ctx.obj.setdefault("context_factory", IndexContext.create)


cli.add_command(index_command, name="index")
cli.add_command(search_command, name="search")
cli.add_command(stats_command, name="stats")
cli.add_command(remove_command, name="remove")
cli.add_command(clear_command, name="clear")
cli.add_command(models_command, name="models")


if __name__ == "__main__":
    cli()
