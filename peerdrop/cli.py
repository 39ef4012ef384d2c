#!/usr/bin/env python3
"""
PeerDrop CLI

Command-line interface for room-based WebRTC file sharing.

Usage:
    peerdrop serve                   # Run the signaling server
    peerdrop health                  # Probe the signaling server
    peerdrop send FILE...            # Open a room and send files
    peerdrop receive ROOM            # Join a room and save incoming files
    peerdrop room-code               # Print a fresh room code
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn
from rich.panel import Panel
from rich.logging import RichHandler

from .config import load_config
from .client import SignalingClient
from .node import PeerNode, generate_room_code
from .transfer import Transfer, TransferStatus, TransferDirection

console = Console()


def setup_logging(verbose: bool = False):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )
    # aioice/aiortc are very chatty at DEBUG
    logging.getLogger('aioice').setLevel(logging.WARNING)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.option('--server', help='Signaling server URL')
@click.pass_context
def cli(ctx, verbose, config_path, server):
    """PeerDrop - peer-to-peer file sharing over WebRTC data channels."""
    setup_logging(verbose)
    ctx.ensure_object(dict)
    config = load_config(Path(config_path) if config_path else None)
    if server:
        config.server_url = server
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', help='Bind address')
@click.option('--port', type=int, help='Listen port')
@click.pass_context
def serve(ctx, host, port):
    """Run the signaling server."""
    config = ctx.obj['config']
    if host:
        config.host = host
    if port:
        config.port = port

    from .signaling import run_server

    console.print(Panel.fit(
        f"[bold green]Signaling Server[/bold green]\n\n"
        f"Listening on: [cyan]{config.host}:{config.port}[/cyan]\n"
        f"WebSocket: [yellow]/ws[/yellow]\n"
        f"Health: [yellow]/health[/yellow]",
        title="PeerDrop"
    ))

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@cli.command()
@click.pass_context
def health(ctx):
    """Check that the signaling server is reachable."""
    config = ctx.obj['config']

    async def run():
        client = SignalingClient(config.server_url, health_timeout=config.health_timeout)
        try:
            return await client.check_health()
        finally:
            await client.close()

    if asyncio.run(run()):
        console.print(f"[green]✓ Signaling server is up at {config.server_url}[/green]")
    else:
        console.print(f"[red]✗ Signaling server not accessible at {config.server_url}[/red]")
        raise SystemExit(1)


@cli.command()
@click.argument('files', nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option('--room', '-r', help='Join this room instead of creating one')
@click.option('--peers', '-p', default=1, show_default=True, help='Peers to wait for')
@click.option('--wait', '-w', default=300.0, show_default=True,
              help='Seconds to wait for peers')
@click.pass_context
def send(ctx, files, room, peers, wait):
    """Send files to everyone in a room."""
    config = ctx.obj['config']

    async def run():
        node = PeerNode(config)

        try:
            room_id = room.strip().upper() if room else generate_room_code()
            if not await node.join_room(room_id):
                console.print(f"[red]✗ {node.connection_error}[/red]")
                return False

            console.print(Panel.fit(
                f"[bold green]Room Ready[/bold green]\n\n"
                f"Room code (share this): [bold cyan]{room_id}[/bold cyan]\n"
                f"Member ID: [dim]{node.member_id}[/dim]",
                title="PeerDrop"
            ))

            with console.status(f"Waiting for {peers} peer(s)..."):
                if not await node.wait_for_peers(peers, timeout=wait):
                    console.print(f"[red]✗ No peers connected within {wait:.0f}s[/red]")
                    return False

            ok = True
            for file_path in files:
                transfer = await _send_with_progress(node, Path(file_path))
                if transfer.status == TransferStatus.COMPLETED:
                    console.print(f"[green]✓ Sent {transfer.name} "
                                  f"({format_size(transfer.size)})[/green]")
                    for peer_id in transfer.failed_peers:
                        console.print(f"[yellow]  ! {peer_id[:8]} did not receive it[/yellow]")
                else:
                    ok = False
                    console.print(f"[red]✗ {transfer.name}: {transfer.error}[/red]")
            return ok

        finally:
            await node.stop()

    if not asyncio.run(run()):
        raise SystemExit(1)


async def _send_with_progress(node: PeerNode, file_path: Path) -> Transfer:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task(f"Sending {file_path.name}", total=100)

        def update_progress(transfer: Transfer):
            if transfer.direction == TransferDirection.OUTGOING and transfer.name == file_path.name:
                progress.update(task, completed=transfer.progress)

        unsubscribe = node.ledger.subscribe(update_progress)
        try:
            return await node.send_file(file_path)
        finally:
            unsubscribe()


@cli.command()
@click.argument('room')
@click.option('--output-dir', '-o', type=click.Path(file_okay=False),
              help='Where to save received files')
@click.option('--count', '-n', type=int, help='Exit after this many files')
@click.pass_context
def receive(ctx, room, output_dir, count):
    """Join a room and save every file sent to it."""
    config = ctx.obj['config']
    output_dir = Path(output_dir) if output_dir else config.output_dir

    async def run():
        node = PeerNode(config)
        finished: asyncio.Queue = asyncio.Queue()

        def on_change(transfer: Transfer):
            if transfer.direction == TransferDirection.INCOMING and transfer.status.is_terminal:
                finished.put_nowait(transfer)

        node.ledger.subscribe(on_change)

        try:
            if not await node.join_room(room):
                console.print(f"[red]✗ {node.connection_error}[/red]")
                return False

            console.print(f"[green]Joined room [bold]{node.room_id}[/bold][/green]")
            console.print("[dim]Waiting for files, press Ctrl+C to stop[/dim]\n")

            saved = 0
            while count is None or saved < count:
                transfer = await finished.get()
                if transfer.status == TransferStatus.COMPLETED:
                    path = await node.save_transfer(transfer.id, output_dir)
                    saved += 1
                    console.print(f"[green]✓ {transfer.name} ({format_size(transfer.size)}) "
                                  f"→ {path}[/green]")
                else:
                    console.print(f"[red]✗ {transfer.name}: {transfer.error}[/red]")

            _print_transfers(node)
            return True

        finally:
            await node.stop()

    try:
        ok = asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
        return
    if not ok:
        raise SystemExit(1)


def _print_transfers(node: PeerNode):
    transfers = node.incoming
    if not transfers:
        return

    table = Table(title="Received Files")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right", style="yellow")
    table.add_column("Status")
    table.add_column("From", style="dim")

    for t in transfers:
        table.add_row(t.name, format_size(t.size), t.status.value, (t.peer or '')[:8])

    console.print(table)


@cli.command('room-code')
def room_code():
    """Print a fresh room code."""
    console.print(generate_room_code())


def format_size(bytes_count: Optional[float]) -> str:
    """Format bytes as human-readable size."""
    bytes_count = bytes_count or 0
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
