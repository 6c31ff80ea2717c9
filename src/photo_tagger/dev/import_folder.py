"""CLI entrypoint that imports one folder into the local catalog.

The import runs in the background pipeline; this process prints progress
while it runs. Ctrl+C requests a graceful cancel: files already admitted to
the pipeline finish, everything still queued is dropped.
"""

from __future__ import annotations

from pathlib import Path

import typer

from photo_tagger.config import Settings, load_settings
from photo_tagger.pipeline import ImportOrchestrator
from photo_tagger.progress import ImportProgress
from utils.logging import configure_logging, get_logger

LOGGER = get_logger(__name__, extra={"component": "import_folder"})


def _apply_cli_overrides(settings: Settings, db: str | None, device: str | None, skip_tagging: bool) -> Settings:
    if db:
        settings.databases.catalog_url = db
    if device:
        settings.tagging.device = device
        settings.embedding.device = device
    if skip_tagging:
        settings.tagging.enabled = False
    return settings


def _print_progress(progress: ImportProgress) -> None:
    done = progress.processed + progress.errors + progress.canceled
    typer.echo(
        f"\r[{progress.state}] {done}/{progress.discovered} "
        f"errors={progress.errors} skipped={progress.skipped} stage={progress.current_stage or '-'}",
        nl=progress.finished,
    )


def main(
    root: Path = typer.Argument(
        ...,
        file_okay=False,
        dir_okay=True,
        exists=True,
        readable=True,
        help="Folder to import recursively.",
    ),
    db: str | None = typer.Option(
        None,
        "--db",
        help="Catalog database URL or path. Defaults to databases.catalog_url in settings.yaml.",
    ),
    device: str | None = typer.Option(
        None,
        "--device",
        help="Override the model device, for example cpu, cuda, or mps.",
    ),
    skip_tagging: bool = typer.Option(
        False,
        "--skip-tagging",
        help="Do not compute scene tags during this import.",
    ),
    log_level: str | None = typer.Option(None, "--log-level", help="Console log level."),
) -> None:
    """Import every supported image under ROOT and wait for the job to finish."""

    configure_logging(log_level)
    settings = _apply_cli_overrides(load_settings(), db, device, skip_tagging)

    orchestrator = ImportOrchestrator(settings)
    orchestrator.add_listener(_print_progress)
    handle = orchestrator.submit(root)
    LOGGER.info("import_folder_started", extra={"job_id": handle.job_id, "root": str(handle.root)})

    try:
        while not handle.wait(timeout=0.5):
            pass
    except KeyboardInterrupt:
        LOGGER.info("import_folder_cancel_requested", extra={"job_id": handle.job_id})
        orchestrator.cancel(handle)
        handle.wait()

    final = handle.progress()
    LOGGER.info(
        "import_folder_complete",
        extra={
            "job_id": handle.job_id,
            "state": final.state,
            "discovered": final.discovered,
            "processed": final.processed,
            "errors": final.errors,
            "skipped": final.skipped,
            "canceled": final.canceled,
        },
    )
    if final.error_message:
        typer.echo(f"import failed: {final.error_message}", err=True)
        raise typer.Exit(code=1)


def cli() -> None:
    typer.run(main)


if __name__ == "__main__":
    cli()


__all__ = ["cli", "main"]
