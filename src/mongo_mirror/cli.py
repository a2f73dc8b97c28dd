# src/mongo_mirror/cli.py
"""Command-line interface for the mongo-mirror tool."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
from dotenv import load_dotenv
from rich.logging import RichHandler

from mongo_mirror.config import RESUME_TYPES, AppConfig, Config, SyncMode
from mongo_mirror.exceptions import ConfigError, MirrorError
from mongo_mirror.signals import GracefulShutdown

logger: logging.Logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Configure rich-based logging for the application."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # Silence noisy loggers
    for logger_name in ["pymongo", "pymongo.topology", "pymongo.connection"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


async def main_async(config: Config) -> None:
    """
    Asynchronously execute the replication pipeline.

    Args:
        config (Config): The application configuration.
    """
    # Lazily import to keep CLI startup fast
    from mongo_mirror.pipeline import MirrorPipeline

    async with GracefulShutdown() as shutdown_event:
        pipeline: MirrorPipeline = MirrorPipeline(config, shutdown_event)
        await pipeline.run()


def _optional_path(value: Optional[str]) -> Optional[Path]:
    return Path(value) if value else None


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--change-stream",
    "use_change_stream",
    is_flag=True,
    default=False,
    help="Replicate by tailing the source change stream.",
)
@click.option(
    "--sync-field",
    default=None,
    help="Replicate incrementally ordered by this field (e.g. updatedAt or _id).",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=100,
    help="Maximum number of documents per batch.",
    show_default=True,
)
@click.option(
    "--checkpoint-file",
    type=click.Path(dir_okay=False, writable=True, resolve_path=True),
    default=None,
    help="File storing the replication checkpoint.",
)
@click.option(
    "--health-file",
    type=click.Path(dir_okay=False, writable=True, resolve_path=True),
    default=None,
    help="File overwritten with the epoch milliseconds after every applied batch.",
)
@click.option(
    "--resume-value",
    default=None,
    help="Start position overriding the checkpoint file: a field value, or the "
    "resume token '_data' string in change stream mode.",
)
@click.option(
    "--resume-type",
    type=click.Choice(RESUME_TYPES, case_sensitive=False),
    default=None,
    help="Type of --resume-value in field mode.",
)
@click.option(
    "--resume-id",
    default=None,
    help="ObjectId of the last synced document sharing --resume-value.",
)
@click.option(
    "--max-await-ms",
    type=click.IntRange(min=1),
    default=1000,
    help="Longest wait for change stream events per pull.",
    show_default=True,
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
def cli(**kwargs: Any) -> None:
    """
    Continuously mirror one MongoDB collection into another.

    Choose exactly one strategy: --change-stream tails the source change
    stream and also replicates deletes, while --sync-field polls for
    documents beyond the last synced (field, _id) position, backing off
    while the source is idle.

    Progress is stored in the checkpoint file after every applied batch, so
    the process can be stopped and restarted without losing its place.

    Connection details must be set via environment variables. See the
    .env.example file for required variables.
    """
    load_dotenv()
    setup_logging(kwargs["log_level"])

    try:
        if kwargs["use_change_stream"] == bool(kwargs["sync_field"]):
            raise ConfigError(
                "Exactly one of --change-stream or --sync-field must be provided."
            )
        resume_type: Optional[str] = kwargs["resume_type"]
        app_config: AppConfig = AppConfig(
            mode=SyncMode.CHANGE_STREAM
            if kwargs["use_change_stream"]
            else SyncMode.FIELD,
            sync_field=kwargs["sync_field"],
            batch_limit=kwargs["limit"],
            checkpoint_file=_optional_path(kwargs["checkpoint_file"]),
            health_file=_optional_path(kwargs["health_file"]),
            resume_value=kwargs["resume_value"],
            resume_type=resume_type.lower() if resume_type else None,
            resume_id=kwargs["resume_id"],
            max_await_ms=kwargs["max_await_ms"],
        )
        config: Config = Config(app=app_config)

        asyncio.run(main_async(config))
        logger.info("✅ Replication stopped cleanly.")
    except MirrorError as e:
        logger.critical(f"A critical application error occurred: {e}")
        sys.exit(1)
    except asyncio.CancelledError:
        logger.warning("Shutdown signal received. Exiting.")
    except Exception:
        logger.critical(
            "An unexpected error caused the application to fail:", exc_info=True
        )
        sys.exit(1)


if __name__ == "__main__":
    cli()
