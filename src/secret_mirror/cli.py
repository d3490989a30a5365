# src/secret_mirror/cli.py
"""Command-line interface for the secret-mirror controller."""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

import click
from dotenv import load_dotenv
from rich.logging import RichHandler

from secret_mirror.config import AppConfig
from secret_mirror.exceptions import SecretMirrorError
from secret_mirror.signals import GracefulShutdown

logger: logging.Logger = logging.getLogger(__name__)


def setup_logging(level: str) -> None:
    """Configure rich-based logging for the application."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    # The config watcher logs every inotify event at debug level.
    logging.getLogger("watchdog").setLevel(logging.WARNING)


async def main_async(config: AppConfig) -> None:
    """
    Asynchronously run the controller until a shutdown signal arrives.

    Args:
        config (AppConfig): The application configuration.
    """
    # Lazily import to keep the CLI fast
    from secret_mirror.pipeline import SecretMirrorPipeline

    shutdown_manager: GracefulShutdown = GracefulShutdown()
    async with shutdown_manager as shutdown_event:
        pipeline: SecretMirrorPipeline = SecretMirrorPipeline(config, shutdown_event)
        await pipeline.run()


@click.command(context_settings=dict(help_option_names=["-h", "--help"]))
@click.option(
    "--config",
    "config_path",
    envvar="SECRET_MIRROR_CONFIG",
    required=True,
    type=click.Path(dir_okay=False, path_type=Path),
    help="Path to the mirror rules file.",
)
@click.option(
    "--num-workers",
    envvar="SECRET_MIRROR_NUM_WORKERS",
    type=int,
    default=10,
    help="Number of secrets reconciled in parallel.",
    show_default=True,
)
@click.option(
    "--cluster-state",
    "cluster_state_path",
    envvar="SECRET_MIRROR_CLUSTER_STATE",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML file seeding the in-memory cluster backend.",
)
@click.option(
    "--resync-period",
    envvar="SECRET_MIRROR_RESYNC_PERIOD",
    type=float,
    default=300.0,
    help="Seconds between full resyncs of every cached secret (0 disables).",
    show_default=True,
)
@click.option(
    "--log-level",
    envvar="SECRET_MIRROR_LOG_LEVEL",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Set the logging level.",
    show_default=True,
)
def cli(**kwargs: Any) -> None:
    """
    Mirror secrets between namespaces.

    Watches secrets and copies the data of every source named in the rules
    file to its configured targets, retrying failed copies with exponential
    backoff. The rules file is reloaded whenever its directory changes.

    The first SIGINT/SIGTERM drains the workers; a second one exits at once.
    """
    setup_logging(kwargs["log_level"])

    try:
        cluster_state_path: Optional[Path] = kwargs["cluster_state_path"]
        config: AppConfig = AppConfig(
            config_path=kwargs["config_path"],
            num_workers=kwargs["num_workers"],
            resync_period_s=kwargs["resync_period"],
            cluster_state_path=cluster_state_path,
        )

        asyncio.run(main_async(config))
        logger.info("Controller stopped.")
    except SecretMirrorError as e:
        logger.critical(f"A critical application error occurred: {e}")
        sys.exit(1)
    except asyncio.CancelledError:
        logger.warning("Shutdown signal received. Exiting.")
    except Exception:
        logger.critical(
            "An unexpected error caused the application to fail:", exc_info=True
        )
        sys.exit(1)


def main() -> None:
    """Console entry point: load `.env` so it can supply option defaults."""
    load_dotenv()
    cli()


if __name__ == "__main__":
    main()
