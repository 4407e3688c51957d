"""CLI for Blueberry: run the daemon and manage the hub account link."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import TYPE_CHECKING

import click

from blueberry import __version__
from blueberry.config import ConfigError, load_config
from blueberry.hub.errors import HubError

if TYPE_CHECKING:
    from blueberry.daemon import BlueberryDaemon

logger = logging.getLogger(__name__)

_config_option = click.option(
    "--config",
    "config_dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Config directory (defaults to $CONFIG_DIR or /data/)",
)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Blueberry: automation companion for a Home Assistant hub."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@_config_option
def run(config_dir: Path | None) -> None:
    """Start the daemon and keep it running until interrupted."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}")
        sys.exit(1)
    click.echo(f"Starting {config.name} against {config.hub.url}")
    asyncio.run(_run_daemon(config_dir))


@cli.command()
@_config_option
@click.option("--token", required=True, help="Long-lived access token created in the hub")
def link(config_dir: Path | None, token: str) -> None:
    """Verify a long-lived token against the hub and store it."""
    try:
        status = asyncio.run(_link(config_dir, token))
    except (ConfigError, HubError) as exc:
        click.echo(f"Could not link account: {exc}")
        sys.exit(1)
    click.echo(f"Linked (connected={status['connected']})")


@cli.command()
@_config_option
def unlink(config_dir: Path | None) -> None:
    """Forget the stored hub credentials."""
    asyncio.run(_unlink(config_dir))
    click.echo("Unlinked")


@cli.command()
@_config_option
def status(config_dir: Path | None) -> None:
    """Show the configured hub and the stored account link."""
    try:
        config = load_config(config_dir)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}")
        sys.exit(1)
    info = asyncio.run(_status(config_dir))
    mode = "supervised" if config.hub.supervised else "standalone"
    click.echo(f"Hub:         {config.hub.url} ({mode})")
    click.echo(f"Storage:     {config.storage_path}")
    click.echo(f"Client name: {info['client_name'] or '-'}")


def _offline_daemon(config_dir: Path | None) -> BlueberryDaemon:
    from blueberry.daemon import BlueberryDaemon

    daemon = BlueberryDaemon(config_dir, configure_logs=False)
    daemon.build()
    return daemon


async def _link(config_dir: Path | None, token: str) -> dict:
    daemon = _offline_daemon(config_dir)
    assert daemon.manager is not None
    try:
        await asyncio.wait_for(daemon.manager.global_connect(reauth_token=token), timeout=30)
        return await daemon.manager.status()
    except TimeoutError as exc:
        raise HubError("Hub did not answer within 30s") from exc
    finally:
        await daemon.shutdown()


async def _unlink(config_dir: Path | None) -> None:
    daemon = _offline_daemon(config_dir)
    assert daemon.manager is not None
    try:
        await daemon.manager.unlink()
    finally:
        await daemon.shutdown()


async def _status(config_dir: Path | None) -> dict:
    daemon = _offline_daemon(config_dir)
    assert daemon.manager is not None
    try:
        return await daemon.manager.status()
    finally:
        await daemon.shutdown()


async def _run_daemon(config_dir: Path | None) -> None:
    """Start the daemon and wait for SIGINT/SIGTERM."""
    from blueberry.daemon import BlueberryDaemon

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = BlueberryDaemon(config_dir)
    await daemon.start()
    click.echo(f"Blueberry {daemon.config.name} running")

    await shutdown_event.wait()
    await daemon.shutdown()


if __name__ == "__main__":
    cli()
