"""
CLI entrypoint for whatwatt-live.
"""
import asyncio
import sys

import httpx
import typer
from loguru import logger

from whatwatt_live.client.auth import detect_auth_scheme
from whatwatt_live.client.event_stream import EventStreamManager
from whatwatt_live.client.visualizer import Visualizer
from whatwatt_live.shared.config import settings
from whatwatt_live.shared.models import ConnectionConfig

app = typer.Typer(help="whatwatt Go live stream tools")


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


@app.command()
def watch(
    host: str = typer.Argument(..., help="Device host name or IP address"),
    port: int = typer.Option(settings.DEFAULT_PORT, help="Device port"),
    https: bool = typer.Option(False, "--https", help="Connect over TLS"),
    username: str = typer.Option("", help="Web UI user name (usually empty)"),
    password: str = typer.Option("", envvar="WHATWATT_PASSWORD", help="Web UI password, if protection is enabled"),
    auth: str = typer.Option("auto", help="Auth scheme: auto, digest or basic"),
    duration: float = typer.Option(300.0, help="How long to watch the stream, in seconds"),
    log_level: str = typer.Option(settings.LOG_LEVEL, help="Log level for stderr"),
):
    """Stream live readings into the rich dashboard."""
    _configure_logging(log_level)
    config = ConnectionConfig(
        host=host, port=port, use_tls=https, username=username, password=password, auth_scheme=auth
    )
    visualizer = Visualizer(EventStreamManager(config))
    try:
        asyncio.run(visualizer.run(duration))
    except KeyboardInterrupt:
        pass


@app.command()
def probe(
    host: str = typer.Argument(..., help="Device host name or IP address"),
    port: int = typer.Option(settings.DEFAULT_PORT, help="Device port"),
    https: bool = typer.Option(False, "--https", help="Connect over TLS"),
    timeout: float = typer.Option(settings.REQUEST_TIMEOUT_S, help="Probe timeout in seconds"),
):
    """Print the authentication scheme the device asks for."""
    config = ConnectionConfig(host=host, port=port, use_tls=https, timeout=timeout)

    async def _probe():
        async with httpx.AsyncClient(verify=config.verify_tls) as client:
            return await detect_auth_scheme(client, config.base_url, config.timeout)

    try:
        scheme = asyncio.run(_probe())
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        typer.echo(f"Probe failed: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(scheme.value)


if __name__ == "__main__":
    app()
