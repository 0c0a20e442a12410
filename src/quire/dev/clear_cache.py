"""CLI to drop every cached artefact from the SQL blob cache."""

from __future__ import annotations

import typer

from quire.config import load_settings
from quire.db import open_cache_session, reset_cache_tables
from utils.logging import get_logger

LOGGER = get_logger(__name__)


def main(
    cache_url: str | None = typer.Option(
        None,
        "--cache-url",
        help="Cache database URL or path. Defaults to cache.url from settings.yaml.",
    ),
) -> None:
    """Delete all cached artefacts; they are rebuilt on demand from working images or originals."""

    settings = load_settings()
    target = cache_url or settings.cache.url

    with open_cache_session(target) as session:
        removed = reset_cache_tables(session)

    LOGGER.info("cache_cleared", extra={"target": target, "removed": removed})
    typer.echo(f"removed {removed} cached artefacts")


if __name__ == "__main__":
    typer.run(main)
