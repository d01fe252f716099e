"""
Command-Line Interface for CS2Hue.

Provides commands for running the light sync, inspecting lights,
testing colors and writing a starting palette.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
import structlog

from cs2hue import __version__

logger = structlog.get_logger()


def configure_logging(debug: bool) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.DEBUG if debug else logging.INFO
        ),
    )


def _load_settings(ctx: click.Context):
    from cs2hue.core.config import Settings

    if ctx.obj["config_path"]:
        settings = Settings.from_yaml(ctx.obj["config_path"])
    else:
        settings = Settings()
    settings.debug = ctx.obj["debug"]
    return settings


@click.group()
@click.version_option(version=__version__)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option(
    "--config",
    type=click.Path(exists=True),
    help="Path to configuration file",
)
@click.pass_context
def cli(ctx: click.Context, debug: bool, config: Optional[str]) -> None:
    """
    CS2Hue - Counter-Strike 2 light sync for Philips Hue and Yeelight

    Watches the game state feed and drives your lights: team colors,
    a blinking bomb countdown, and a fade on every round result.
    """
    ctx.ensure_object(dict)
    configure_logging(debug)

    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config) if config else None


@cli.command()
@click.option("--mock", is_flag=True, help="Drive in-memory mock lights (no hardware)")
@click.option("--no-server", is_flag=True, help="Only poll the game state file")
@click.pass_context
def run(ctx: click.Context, mock: bool, no_server: bool) -> None:
    """Run the light sync."""
    from cs2hue.core.exceptions import LightSyncError
    from cs2hue.orchestrator.builder import build_light_sync
    from cs2hue.ui.control_server import serve

    settings = _load_settings(ctx)

    click.echo(f"CS2Hue v{__version__}")
    click.echo("=" * 50)
    click.echo(f"Mode: {'Mock' if mock else 'Live'} ({settings.gateway.provider})")
    click.echo(f"Game state: {settings.resolve(settings.gamestate_path)}")
    click.echo()

    try:
        light_sync = build_light_sync(settings, mock_devices=mock)
        click.echo("Press Ctrl+C to stop.")
        click.echo()
        if no_server:
            asyncio.run(light_sync.run_forever())
        else:
            asyncio.run(serve(light_sync, settings.server.host, settings.server.port))
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
    except LightSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        if ctx.obj["debug"]:
            raise
        sys.exit(1)


@cli.command()
@click.option("--mock", is_flag=True, help="Use mock lights")
@click.pass_context
def lights(ctx: click.Context, mock: bool) -> None:
    """Show the current state of every configured light."""
    from cs2hue.core.exceptions import LightSyncError
    from cs2hue.orchestrator.builder import build_light_sync

    settings = _load_settings(ctx)

    async def _read() -> None:
        light_sync = build_light_sync(settings, mock_devices=mock)
        try:
            await light_sync.gateway.check_ready(light_sync.light_ids)
            for light_id in light_sync.light_ids:
                state = await light_sync.queues.read_state(light_id)
                if state is None:
                    click.echo(f"  [{light_id}] unreachable")
                else:
                    click.echo(f"  [{light_id}] {state.to_dict()}")
        finally:
            await light_sync.gateway.close()

    if not settings.gateway.light_ids and not mock:
        click.echo("Error: no light ids configured", err=True)
        sys.exit(1)

    click.echo("Configured lights:")
    click.echo("-" * 60)
    try:
        asyncio.run(_read())
    except LightSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)


@cli.command()
@click.argument("name")
@click.option("--mock", is_flag=True, help="Use mock lights")
@click.pass_context
def test_color(ctx: click.Context, name: str, mock: bool) -> None:
    """Apply the color template NAME to all lights once."""
    from cs2hue.core.exceptions import LightSyncError
    from cs2hue.orchestrator.builder import build_light_sync

    settings = _load_settings(ctx)

    async def _apply() -> bool:
        light_sync = build_light_sync(settings, mock_devices=mock)
        color = light_sync.machine.palette.get(name)
        if color is None:
            click.echo(f"Error: color '{name}' is disabled or not defined", err=True)
            return False
        try:
            await light_sync.gateway.check_ready(light_sync.light_ids)
            applied = await light_sync.scene.apply_color_with_fallback(color, name)
            await light_sync.scene.wait_confirmation()
            await light_sync.queues.drain()
            return applied
        finally:
            light_sync.scene.cancel_confirmation()
            await light_sync.queues.close()
            await light_sync.gateway.close()

    try:
        applied = asyncio.run(_apply())
    except LightSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    if not applied:
        sys.exit(1)
    click.echo(f"Applied '{name}'")


@cli.command()
@click.argument("path", type=click.Path(dir_okay=False), default="colors.json")
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def init_colors(path: str, force: bool) -> None:
    """Write the built-in color palette to PATH."""
    from cs2hue.core.colors import write_default_palette

    target = Path(path)
    if target.exists() and not force:
        click.echo(f"Error: {target} exists (use --force to overwrite)", err=True)
        sys.exit(1)
    write_default_palette(target)
    click.echo(f"Wrote default palette to {target}")


def main() -> None:
    """Entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
