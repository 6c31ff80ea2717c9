"""CLI that ranks catalog photos by similarity to one photo."""

from __future__ import annotations

import typer

from photo_tagger.catalog import find_similar
from photo_tagger.config import load_settings
from photo_tagger.errors import EmbeddingMissing, PhotoNotFound
from photo_tagger.store import CatalogStore
from utils.logging import configure_logging


def main(
    photo_id: int = typer.Argument(..., help="Catalog id of the query photo."),
    limit: int | None = typer.Option(None, "--limit", help="Number of results, 1..50. Defaults to 12."),
    scheme: str | None = typer.Option(None, "--scheme", help="Embedding scheme; defaults to the configured backend."),
    db: str | None = typer.Option(None, "--db", help="Catalog database URL or path."),
    log_level: str | None = typer.Option(None, "--log-level", help="Console log level."),
) -> None:
    """Print the photos most similar to PHOTO_ID."""

    configure_logging(log_level)
    settings = load_settings()
    store = CatalogStore(db or settings.databases.catalog_url)

    try:
        results = find_similar(store, photo_id, limit, scheme, settings=settings)
    except (PhotoNotFound, EmbeddingMissing) as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc

    for result in results:
        photo = store.get_photo(result.photo_id)
        typer.echo(f"{result.score:.4f}\t{photo.id}\t{photo.path}")


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["cli", "main"]
