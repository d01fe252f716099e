"""
Control Server: aiohttp app for game state ingest and runtime control.

The game's state integration POSTs its JSON document to ``/``; the body
is validated and written atomically to the snapshot file the poller
watches. ``/status`` and ``/control/*`` expose the light sync lifecycle.
"""

from __future__ import annotations

import asyncio
import json
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import structlog
from aiohttp import web

from cs2hue.orchestrator.builder import LightSync

logger = structlog.get_logger()

LIGHT_SYNC_KEY = web.AppKey("light_sync", LightSync)
GAMESTATE_PATH_KEY = web.AppKey("gamestate_path", Path)


def write_gamestate_atomic(path: Path, text: str) -> None:
    """Write via a temp file and ``os.replace`` so readers never see a partial file."""
    tmp = path.with_name(path.name + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(text)
    os.replace(tmp, path)


async def gamestate_handler(request: web.Request) -> web.Response:
    body = await request.text()
    try:
        data = json.loads(body)
    except ValueError as e:
        logger.warning("Ignoring invalid game state JSON", error=str(e))
        return web.Response(text="ok")
    if not isinstance(data, dict):
        logger.warning("Ignoring game state that is not an object")
        return web.Response(text="ok")

    path: Path = request.app[GAMESTATE_PATH_KEY]
    try:
        write_gamestate_atomic(path, body)
    except OSError as e:
        logger.error("Failed to write game state", path=str(path), error=str(e))
        return web.Response(status=500, text="write failed")
    return web.Response(text="ok")


async def index_handler(request: web.Request) -> web.Response:
    light_sync: LightSync = request.app[LIGHT_SYNC_KEY]
    state = "active" if light_sync.running else "stopped"
    return web.Response(text=f"CS2Hue light sync {state}\n")


async def status_handler(request: web.Request) -> web.Response:
    light_sync: LightSync = request.app[LIGHT_SYNC_KEY]
    return web.json_response(light_sync.status())


async def start_handler(request: web.Request) -> web.Response:
    light_sync: LightSync = request.app[LIGHT_SYNC_KEY]
    changed = await light_sync.start()
    return web.json_response({"ok": light_sync.running, "changed": changed, "running": light_sync.running})


async def stop_handler(request: web.Request) -> web.Response:
    light_sync: LightSync = request.app[LIGHT_SYNC_KEY]
    changed = await light_sync.stop()
    return web.json_response({"ok": True, "changed": changed, "running": light_sync.running})


async def restart_handler(request: web.Request) -> web.Response:
    light_sync: LightSync = request.app[LIGHT_SYNC_KEY]
    started = await light_sync.restart()
    return web.json_response({"ok": started, "changed": started, "running": light_sync.running})


def create_app(light_sync: LightSync, gamestate_path: Optional[Path] = None) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application()
    app[LIGHT_SYNC_KEY] = light_sync
    app[GAMESTATE_PATH_KEY] = gamestate_path or light_sync.poller.path

    app.router.add_post("/", gamestate_handler)
    app.router.add_get("/", index_handler)
    app.router.add_get("/status", status_handler)
    app.router.add_post("/control/start", start_handler)
    app.router.add_post("/control/stop", stop_handler)
    app.router.add_post("/control/restart", restart_handler)
    return app


class ControlServer:
    """Runs the control app alongside the light sync on the same loop."""

    def __init__(self, light_sync: LightSync, host: str = "127.0.0.1", port: int = 8080):
        self.light_sync = light_sync
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> None:
        if self._runner is not None:
            logger.warning("Control server already running")
            return
        self._runner = web.AppRunner(create_app(self.light_sync))
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()
        logger.info("Control server listening", url=self.url)

    async def stop(self) -> None:
        if self._runner is None:
            return
        if self._site is not None:
            await self._site.stop()
            self._site = None
        await self._runner.cleanup()
        self._runner = None
        logger.info("Control server stopped")


async def serve(light_sync: LightSync, host: str, port: int, autostart: bool = True) -> None:
    """Serve until SIGINT/SIGTERM; stops the light sync on the way out."""
    server = ControlServer(light_sync, host, port)
    await server.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C still raises
            pass

    try:
        if autostart:
            await light_sync.start()
        await stop_event.wait()
    finally:
        await light_sync.stop()
        await server.stop()


@click.command()
@click.option("--config", type=click.Path(exists=True), help="Path to configuration file")
@click.option("--mock", is_flag=True, help="Drive in-memory mock lights")
@click.option("--no-autostart", is_flag=True, help="Wait for POST /control/start")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def server_cli(config: Optional[str], mock: bool, no_autostart: bool, debug: bool) -> None:
    """Run the control server with the light sync attached."""
    from cs2hue.core.config import Settings
    from cs2hue.core.exceptions import LightSyncError
    from cs2hue.orchestrator.builder import build_light_sync
    from cs2hue.ui.cli import configure_logging

    configure_logging(debug)
    settings = Settings.from_yaml(Path(config)) if config else Settings()
    settings.debug = debug

    try:
        light_sync = build_light_sync(settings, mock_devices=mock)
        asyncio.run(serve(light_sync, settings.server.host, settings.server.port, not no_autostart))
    except KeyboardInterrupt:
        click.echo("\nShutting down...")
    except LightSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)


def main() -> None:
    """Entry point for the control server."""
    server_cli()


if __name__ == "__main__":
    main()
