#!/usr/bin/env python3
"""
Range Transfer CLI

Command-line interface for the Range Server and the Resumable Fetcher.

Usage:
    rangefetch serve                 # Serve ./files on port 8000
    rangefetch fetcher               # Run the fetcher service on port 8888
    rangefetch fetch NAME            # Download NAME, resuming if partial
    rangefetch probe NAME            # Show the remote size of NAME
    rangefetch config                # Show the effective configuration
"""

import asyncio
import json
import logging
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn,
)

from .config import EXAMPLE_CONFIG, load_config
from .transfer import ResumableFetcher, TransferError

console = Console()


def setup_logging(verbose: bool = False, level: str = 'INFO'):
    """Configure logging with rich output."""
    level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_time=False, show_path=False)]
    )


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--config', 'config_path', type=click.Path(dir_okay=False),
              help='JSON config file')
@click.pass_context
def cli(ctx, verbose, config_path):
    """Resumable single-file transfer over HTTP ranges."""
    config = load_config(Path(config_path) if config_path else None)
    setup_logging(verbose, config.log_level)
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', type=int, default=None, help='Port to listen on')
@click.option('--root', type=click.Path(file_okay=False), default=None,
              help='Directory to serve files from')
@click.pass_context
def serve(ctx, host, port, root):
    """Start the Range Server."""
    from .api import create_server_app, run_api_server

    config = ctx.obj['config']
    if host:
        config.host = host
    if port:
        config.server_port = port
    if root:
        config.serve_root = Path(root)

    if not config.serve_root.is_dir():
        console.print(f"[red]Root directory does not exist: {config.serve_root}[/red]")
        ctx.exit(1)

    console.print(Panel.fit(
        f"[bold green]Range Server[/bold green]\n\n"
        f"Root: [blue]{config.serve_root.resolve()}[/blue]\n"
        f"Port: [yellow]{config.server_port}[/yellow]",
        title="Server Info"
    ))

    app = create_server_app(config)
    asyncio.run(run_api_server(
        app, config.host, config.server_port, config.shutdown_timeout, config.log_level
    ))
    console.print("[green]Server shutdown successfully.[/green]")


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', type=int, default=None, help='Port to listen on')
@click.option('--server-url', default=None, help='Range Server base URL')
@click.option('--output-dir', '-o', type=click.Path(file_okay=False), default=None,
              help='Directory to download into')
@click.pass_context
def fetcher(ctx, host, port, server_url, output_dir):
    """Start the Fetcher service."""
    from .api import create_fetcher_app, run_api_server

    config = ctx.obj['config']
    if host:
        config.host = host
    if port:
        config.fetcher_port = port
    if server_url:
        config.server_url = server_url
    if output_dir:
        config.download_dir = Path(output_dir)

    console.print(Panel.fit(
        f"[bold green]Resumable Fetcher[/bold green]\n\n"
        f"Upstream: [cyan]{config.server_url}[/cyan]\n"
        f"Download Dir: [blue]{config.download_dir.resolve()}[/blue]\n"
        f"Port: [yellow]{config.fetcher_port}[/yellow]",
        title="Fetcher Info"
    ))

    app = create_fetcher_app(config)
    asyncio.run(run_api_server(
        app, config.host, config.fetcher_port, config.shutdown_timeout, config.log_level
    ))
    console.print("[green]Fetcher shutdown successfully.[/green]")


@cli.command()
@click.argument('file_name')
@click.option('--server-url', default=None, help='Range Server base URL')
@click.option('--output-dir', '-o', type=click.Path(file_okay=False), default=None,
              help='Directory to download into')
@click.option('--chunk-size', type=int, default=None, help='Bytes per range request')
@click.option('--no-gzip', is_flag=True, help='Do not accept compressed chunks')
@click.option('--retries', type=int, default=None, help='Extra attempts after a failure')
@click.pass_context
def fetch(ctx, file_name, server_url, output_dir, chunk_size, no_gzip, retries):
    """Download FILE_NAME, resuming from the local copy if there is one."""
    config = ctx.obj['config']
    if server_url:
        config.server_url = server_url
    if output_dir:
        config.download_dir = Path(output_dir)
    if chunk_size:
        config.chunk_size = chunk_size
    if no_gzip:
        config.accept_gzip = False
    if retries is not None:
        config.retry_attempts = retries

    async def run():
        with Progress(
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=console,
        ) as progress:
            task = progress.add_task(f"Probing {file_name}...", total=None)

            def update_progress(p):
                progress.update(
                    task,
                    total=p.total_size,
                    completed=p.local_size,
                    description=f"{file_name} ({p.phase})",
                )

            async with ResumableFetcher.from_config(config) as fetcher:
                return await fetcher.fetch_with_retries(
                    file_name,
                    attempts=config.retry_attempts,
                    delay=config.retry_delay,
                    progress_callback=update_progress,
                )

    try:
        result = asyncio.run(run())
    except TransferError as e:
        console.print(f"[red]✗ {type(e).__name__}: {escape(e.message)}[/red]")
        ctx.exit(1)

    if result.already_complete:
        console.print(f"[yellow]{result.message}: {result.path}[/yellow]")
    else:
        console.print(Panel.fit(
            f"[bold green]{result.message}[/bold green]\n\n"
            f"File: [cyan]{result.path}[/cyan]\n"
            f"Size: [yellow]{result.total_size:,} bytes[/yellow]\n"
            f"Resumed at: [yellow]{result.resume_point:,}[/yellow]\n"
            f"Chunks: [yellow]{len(result.chunks)}[/yellow] "
            f"([yellow]{sum(1 for c in result.chunks if c.compressed)}[/yellow] compressed)\n"
            f"Took: [yellow]{result.elapsed_seconds:.2f}s[/yellow]",
            title="Fetched File"
        ))


@cli.command()
@click.argument('file_name')
@click.option('--server-url', default=None, help='Range Server base URL')
@click.pass_context
def probe(ctx, file_name, server_url):
    """Show the remote size of FILE_NAME."""
    config = ctx.obj['config']
    if server_url:
        config.server_url = server_url

    async def run():
        async with ResumableFetcher.from_config(config) as fetcher:
            return await fetcher.probe(file_name)

    try:
        size = asyncio.run(run())
    except TransferError as e:
        console.print(f"[red]✗ {type(e).__name__}: {escape(e.message)}[/red]")
        ctx.exit(1)

    console.print(f"{file_name}: [yellow]{size:,} bytes[/yellow] ({format_size(size)})")


@cli.command('config')
@click.option('--example', is_flag=True, help='Print an example config file instead')
@click.pass_context
def show_config(ctx, example):
    """Show the effective configuration."""
    if example:
        click.echo(EXAMPLE_CONFIG.strip())
        return
    click.echo(json.dumps(ctx.obj['config'].to_dict(), indent=2))


def format_size(bytes_count: int) -> str:
    """Format bytes as human-readable size."""
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if bytes_count < 1024:
            return f"{bytes_count:.1f} {unit}"
        bytes_count /= 1024
    return f"{bytes_count:.1f} PB"


if __name__ == '__main__':
    cli()
