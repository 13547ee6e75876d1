"""CLI entry point for qrlink."""

import asyncio
from pathlib import Path

import click

from qrlink import __version__
from qrlink.config import Config, load_config
from qrlink.errors import QrlinkError
from qrlink.logging import access_logger, setup_logging


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file.",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None) -> None:
    """qrlink - Link a messaging account and capture its session once."""
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(config)
    except QrlinkError as e:
        raise click.ClickException(str(e))
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


def _build_registry(config: Config):
    from qrlink.pairing.registry import SessionRegistry
    from qrlink.providers import load_provider_factory
    from qrlink.session_store import FileSessionStore

    factory = load_provider_factory(config.provider)
    store = FileSessionStore(Path(config.session_dir).expanduser())
    return SessionRegistry(factory, store, config=config)


@main.command()
@click.option("--port", "-p", type=int, default=None, help="Override configured port.")
@click.pass_context
def serve(ctx: click.Context, port: int | None) -> None:
    """Run the pairing server."""
    from qrlink.server import PairingServer

    config = ctx.obj["config"]
    bind_port = port if port is not None else config.port

    try:
        registry = _build_registry(config)
    except QrlinkError as e:
        raise click.ClickException(str(e))

    async def _serve():
        server = PairingServer(
            registry,
            keepalive_interval=config.pairing.keepalive_interval,
            access_log=access_logger(config),
        )
        try:
            await server.start(config.bind_address, bind_port)
            click.echo(f"qrlink running on port {server.get_port()}")
            click.echo("Press Ctrl+C to stop")
            await asyncio.Event().wait()
        finally:
            await server.close()

    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        click.echo("\nShutting down...")


@main.command()
@click.option("--number", "-n", default=None, help="Phone number for code pairing.")
@click.option("--timeout", type=float, default=300.0, help="Seconds to wait for the link.")
@click.pass_context
def pair(ctx: click.Context, number: str | None, timeout: float) -> None:
    """Link an account from the terminal."""
    from qrlink.pairing.hub import EVENT_QR, EVENT_STATUS
    from qrlink.pairing.qr_render import QrRenderer
    from qrlink.pairing.session import PairingRequest, PairingState

    config = ctx.obj["config"]
    try:
        registry = _build_registry(config)
    except QrlinkError as e:
        raise click.ClickException(str(e))

    async def _pair() -> bool:
        try:
            session, result = await registry.create(PairingRequest(identifier=number))
        except QrlinkError as e:
            click.echo(f"Error: {e}", err=True)
            return False

        if result.pairing_code:
            click.echo(f"Pairing code: {result.pairing_code}")
        else:
            click.echo("Waiting for QR code...")

        subscription = session.hub.subscribe()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        try:
            while loop.time() < deadline:
                # Short waits so a finished capture is noticed without a new event
                event = await subscription.get(timeout=min(1.0, deadline - loop.time()))
                if event is None:
                    if subscription.closed:
                        break
                elif event.type == EVENT_QR:
                    click.echo(QrRenderer(event.value).to_terminal())
                    click.echo("Scan with Linked Devices on your phone")
                elif event.type == EVENT_STATUS:
                    click.echo(f"Status: {event.value}")
                    if event.value == PairingState.CLOSED_TERMINAL.value:
                        break
                if session.captured_once:
                    click.echo("Session credentials delivered to the linked account")
                    return True
            return session.captured_once
        finally:
            session.hub.unsubscribe(subscription)
            await registry.close()

    if not asyncio.run(_pair()):
        raise SystemExit(1)


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"qrlink version {__version__}")
