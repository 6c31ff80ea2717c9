"""CLI that prints near-duplicate groups from the catalog."""

from __future__ import annotations

import typer

from photo_tagger.catalog import find_duplicates
from photo_tagger.config import load_settings
from photo_tagger.store import CatalogStore
from utils.logging import configure_logging, get_logger

LOGGER = get_logger(__name__, extra={"component": "find_duplicates"})


def main(
    threshold: int | None = typer.Option(
        None,
        "--threshold",
        help="Maximum Hamming distance between hashes. Defaults to duplicates.hamming_threshold.",
    ),
    db: str | None = typer.Option(None, "--db", help="Catalog database URL or path."),
    log_level: str | None = typer.Option(None, "--log-level", help="Console log level."),
) -> None:
    """List groups of visually near-identical photos."""

    configure_logging(log_level)
    settings = load_settings()
    store = CatalogStore(db or settings.databases.catalog_url)

    groups = find_duplicates(store, threshold, settings=settings)
    for group in groups:
        photos = [store.get_photo(photo_id) for photo_id in group.members]
        typer.echo(f"group {group.representative} ({group.size} photos)")
        for photo in photos:
            typer.echo(f"  {photo.id}\t{photo.path}")

    LOGGER.info("find_duplicates_complete", extra={"groups": len(groups)})


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["cli", "main"]
