"""CLI utilities."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import click

from tabrecall.config.models import TabRecallConfig
from tabrecall.core.errors import TabRecallError
from tabrecall.daemon.lifecycle import IndexContext
from tabrecall.index.ops import ContentIndexer, StaticExtractor, TextExtractor

T = TypeVar("T")

ContextFactory = Callable[[TabRecallConfig], IndexContext]


def get_config(ctx: click.Context) -> TabRecallConfig:
    config: TabRecallConfig = ctx.obj["config"]
    return config


def get_context_factory(ctx: click.Context) -> ContextFactory:
    factory: ContextFactory = ctx.obj.get("context_factory", IndexContext.create)
    return factory


@asynccontextmanager
async def open_indexer(
    ctx: click.Context,
    *,
    extractor: TextExtractor | None = None,
    load_model: bool = True,
) -> AsyncIterator[ContentIndexer]:
    """Build a context and indexer for one command, closing both afterwards.

    With load_model=False only the stored index is opened; commands that
    never embed (stats, remove, clear) skip the model load.
    """
    context = get_context_factory(ctx)(get_config(ctx))
    indexer = ContentIndexer(context, extractor or StaticExtractor())
    try:
        if load_model:
            await indexer.initialize()
        else:
            await context.ensure_index()
        yield indexer
    finally:
        await context.close()


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a command coroutine, turning library errors into CLI errors."""
    try:
        return asyncio.run(coro)
    except TabRecallError as e:
        raise click.ClickException(str(e)) from e
