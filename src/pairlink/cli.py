"""CLI entry point for pairlink."""

import asyncio
from pathlib import Path
from typing import Any, Coroutine

import click

from pairlink import __version__
from pairlink.config import Config, load_config
from pairlink.errors import (
    GENERIC_CONNECT_FAILURE,
    AlreadyConnectedError,
    NotFoundError,
    PairlinkError,
)
from pairlink.formatting import format_entry, format_time_ago
from pairlink.logging import setup_logging


def _run(coro: Coroutine[Any, Any, None]) -> None:
    """Run a command coroutine, turning pairlink errors into exit code 1."""
    try:
        asyncio.run(coro)
    except KeyboardInterrupt:
        click.echo("\nCancelled")
    except PairlinkError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


def _require_remote(config: Config) -> None:
    if config.store.backend != "remote":
        click.echo(
            "Error: pairing between devices needs the remote store backend "
            "(set store.backend: remote and run 'pairlink relay')",
            err=True,
        )
        raise SystemExit(1)


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
    """pairlink - pair two devices and share text in real time."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = load_config(config)
    ctx.obj["logger"] = setup_logging(ctx.obj["config"])


@main.command()
def version() -> None:
    """Show version."""
    click.echo(f"pairlink version {__version__}")


@main.command()
@click.option("--port", "-p", type=int, default=None, help="Port to listen on.")
@click.pass_context
def relay(ctx: click.Context, port: int | None) -> None:
    """Run the relay server that stores rows and pushes changes."""
    from pairlink.config import StoreConfig
    from pairlink.pairing.reaper import PendingReaper
    from pairlink.server import RelayServer
    from pairlink.store import open_store

    config: Config = ctx.obj["config"]
    bind_port = port or config.relay.port
    setup_logging(config, access_log=True)

    async def _relay():
        # The relay never proxies to another relay
        store_config = config.store
        if store_config.backend == "remote":
            store_config = StoreConfig(backend="json", path=config.store.path)
        store = await open_store(store_config)

        server = RelayServer(store)
        reaper = PendingReaper(
            store,
            ttl=config.pairing.pending_ttl,
            interval=config.pairing.reap_interval,
        )
        try:
            await server.start(config.relay.bind_address, bind_port)
            await reaper.start()
            click.echo(f"Relay listening on {config.relay.bind_address}:{bind_port}")
            click.echo("Press Ctrl+C to stop")
            await asyncio.Event().wait()
        finally:
            await reaper.stop()
            await server.stop()
            await store.close()

    _run(_relay())


@main.command()
@click.option(
    "--base-url",
    default="https://pairlink.invalid/",
    show_default=True,
    help="Base URL encoded in the QR code.",
)
@click.option("--pin/--no-pin", default=True, help="Also issue a 4-digit PIN.")
@click.option("--browser", "-b", is_flag=True, help="Open QR code in browser.")
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default=None,
    help="Save QR code to PNG file.",
)
@click.option(
    "--timeout",
    "-t",
    type=int,
    default=300,
    help="Timeout in seconds waiting for a guest.",
)
@click.pass_context
def host(
    ctx: click.Context,
    base_url: str,
    pin: bool,
    browser: bool,
    output: str | None,
    timeout: int,
) -> None:
    """Start a connection and wait for another device to join."""
    from pairlink.client import DeviceSession
    from pairlink.pairing.qr_generator import QrRenderer
    from pairlink.store import open_store

    config: Config = ctx.obj["config"]
    _require_remote(config)

    async def _host():
        import tempfile
        import webbrowser

        store = await open_store(config.store)
        try:
            async with DeviceSession(
                store,
                max_length=config.content.max_length,
            ) as session:
                await session.host()
                # Open the inbox before anyone can join so nothing sent on arrival is lost
                inbox = await session.inbox()
                url = session.connection_url(base_url)
                renderer = QrRenderer(url)

                if browser:
                    with tempfile.NamedTemporaryFile(
                        suffix=".html", delete=False, mode="w"
                    ) as f:
                        f.write(renderer.to_html())
                    webbrowser.open(f"file://{f.name}")
                    click.echo("QR code opened in browser")
                elif output:
                    renderer.to_png(output)
                    click.echo(f"QR code saved to: {output}")
                else:
                    click.echo(renderer.to_terminal())
                click.echo(f"Connection URL: {url}")

                if pin:
                    code = await session.issue_pin()
                    click.echo(f"PIN: {code}")

                click.echo("\nConnecting...")
                try:
                    peer = await session.wait_connected(timeout=timeout)
                except asyncio.TimeoutError:
                    click.echo("Timeout waiting for device to connect", err=True)
                    raise SystemExit(1)

                click.echo(f"Connected! Ready to share. Peer: {peer[:8]}")
                click.echo(f"Connection: {session.connection_id}")
                click.echo(f"Device: {session.device_id}")

                async for entry in inbox:
                    click.echo(format_entry(entry, session.device_id))
        finally:
            await store.close()

    _run(_host())


@main.command()
@click.option("--url", "payload", default=None, help="Scanned QR payload.")
@click.option("--pin", default=None, help="4-digit PIN shown by the host.")
@click.option("--message", "-m", multiple=True, help="Text to send after joining.")
@click.option("--listen", "-l", is_flag=True, help="Keep printing incoming content.")
@click.pass_context
def join(
    ctx: click.Context,
    payload: str | None,
    pin: str | None,
    message: tuple[str, ...],
    listen: bool,
) -> None:
    """Join a connection by QR payload or PIN."""
    from pairlink.client import DeviceSession
    from pairlink.store import open_store

    config: Config = ctx.obj["config"]
    _require_remote(config)
    if (payload is None) == (pin is None):
        click.echo("Error: Specify exactly one of --url or --pin", err=True)
        raise SystemExit(1)

    async def _join():
        store = await open_store(config.store)
        try:
            async with DeviceSession(
                store,
                max_length=config.content.max_length,
            ) as session:
                inbox = await session.inbox() if listen else None
                try:
                    if payload is not None:
                        peer = await session.join_by_qr(payload)
                    else:
                        peer = await session.join_by_pin(pin)
                except (NotFoundError, AlreadyConnectedError):
                    click.echo(GENERIC_CONNECT_FAILURE, err=True)
                    raise SystemExit(1)

                click.echo(f"Connected! Ready to share. Peer: {peer[:8]}")
                click.echo(f"Connection: {session.connection_id}")
                click.echo(f"Device: {session.device_id}")

                for text in message:
                    await session.send(text)
                    click.echo("Message sent successfully!")

                if inbox is not None:
                    async for entry in inbox:
                        click.echo(format_entry(entry, session.device_id))
        finally:
            await store.close()

    _run(_join())


@main.command()
@click.argument("connection_id")
@click.argument("device_id")
@click.argument("text")
@click.option("--type", "content_type", default="text", show_default=True)
@click.pass_context
def send(
    ctx: click.Context,
    connection_id: str,
    device_id: str,
    text: str,
    content_type: str,
) -> None:
    """Send TEXT from DEVICE_ID to its peer on CONNECTION_ID."""
    from pairlink.channel import ContentChannel
    from pairlink.store import open_store

    config: Config = ctx.obj["config"]

    async def _send():
        store = await open_store(config.store)
        try:
            channel = ContentChannel(store, max_length=config.content.max_length)
            peer = await channel.pairing.resolve_peer(connection_id, device_id)
            await channel.send(connection_id, device_id, peer, content_type, text)
            click.echo("Message sent successfully!")
        finally:
            await store.close()

    _run(_send())


@main.command()
@click.argument("connection_id")
@click.option("--device-id", default=None, help="Mark entries sent by this device.")
@click.pass_context
def history(ctx: click.Context, connection_id: str, device_id: str | None) -> None:
    """Show content shared on CONNECTION_ID, oldest first."""
    from pairlink.channel import ContentChannel
    from pairlink.store import open_store

    config: Config = ctx.obj["config"]

    async def _history():
        store = await open_store(config.store)
        try:
            channel = ContentChannel(store)
            record = await channel.pairing.get_connection(connection_id)
            entries = await channel.history(connection_id)

            click.echo(
                f"Connection {connection_id[:8]}: {record.status.value}, "
                f"created {format_time_ago(record.created_at)}"
            )
            if not entries:
                click.echo("No messages.")
                return
            for entry in entries:
                click.echo(format_entry(entry, device_id))
        finally:
            await store.close()

    _run(_history())


@main.command()
@click.pass_context
def reap(ctx: click.Context) -> None:
    """Expire pending connections older than pairing.pending_ttl."""
    from pairlink.pairing.reaper import PendingReaper
    from pairlink.store import open_store

    config: Config = ctx.obj["config"]
    if config.store.backend == "remote":
        click.echo(
            "Error: the relay expires pending connections itself; "
            "run reap against a local store",
            err=True,
        )
        raise SystemExit(1)

    async def _reap():
        store = await open_store(config.store)
        try:
            reaper = PendingReaper(store, ttl=config.pairing.pending_ttl)
            expired = await reaper.reap()
            click.echo(f"Expired {len(expired)} pending connection(s).")
        finally:
            await store.close()

    _run(_reap())


@main.command()
@click.argument("text")
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default=None,
    help="Save QR code to PNG file.",
)
def qr(text: str, output: str | None) -> None:
    """Render TEXT as a QR code for another device to scan."""
    from pairlink.pairing.qr_generator import QrRenderer

    renderer = QrRenderer(text)
    if output:
        renderer.to_png(output)
        click.echo(f"QR code saved to: {output}")
    else:
        click.echo(renderer.to_terminal())
