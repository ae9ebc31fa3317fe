"""Socket2Me CLI - Command line interface."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
import sys

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from socket2me.client.session import SessionState, TunnelSession
from socket2me.core.config import DEFAULT_CONFIG_PATH, ClientConfig, load_client_config
from socket2me.core.exceptions import AuthenticationError, Socket2MeError

console = Console()


def configure_logging(verbose: bool, log_level: str) -> None:
    """Route structlog output through a level filter; --verbose means debug."""
    effective_log_level = "debug" if verbose else log_level
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, effective_log_level.upper())
        ),
    )


def print_banner(config: ClientConfig) -> None:
    console.print("Socket2Me Client Initializing...", style="bold green")

    table = Table.grid(padding=(0, 2))
    table.add_column(style="bold blue")
    table.add_column()
    table.add_row(
        "Passthrough:",
        f"{config.public_url}  [yellow]➤[/yellow]  {config.local.base_url}/",
    )
    allowed = ", ".join(config.local.allowed_paths) or "[dim](all paths)[/dim]"
    table.add_row("Allowed Paths:", allowed)
    console.print(table)
    console.print()


def _print_state(state: SessionState) -> None:
    if state == SessionState.CONNECTING:
        console.print("Connecting...", style="dim")
    elif state == SessionState.READY:
        console.print("[bold green]Ready for requests![/bold green] (ctrl-c to exit)")
    elif state == SessionState.DRAINING:
        console.print("\nClosing connection...", style="green")


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, session: TunnelSession) -> list[int]:
    """Make SIGINT/SIGTERM request a stop. The handlers do nothing else."""
    installed: list[int] = []
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, session.request_stop)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            # No loop signal support (e.g. Windows): hand the stop over to the loop.
            with contextlib.suppress(ValueError):
                signal.signal(
                    sig,
                    lambda *_: loop.call_soon_threadsafe(session.request_stop),
                )
    return installed


def run_session(config: ClientConfig, verbose: bool = False, config_path: str | None = None) -> int:
    """Run the tunnel until stopped. Returns the process exit code."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    session = TunnelSession(config, verbose=verbose)
    session.add_state_hook(_print_state)
    installed = _install_signal_handlers(loop, session)

    try:
        loop.run_until_complete(session.run())
    except AuthenticationError:
        console.print(
            Panel(
                "[red]Authorization failed. Please check your credentials"
                f"{f' in {config_path}' if config_path else ''}.[/red]",
                title="Error: UNAUTHORIZED",
                border_style="red",
            )
        )
        return 1
    except Socket2MeError as e:
        console.print(
            Panel(
                f"[red]{e.message}[/red]",
                title=f"Error: {e.code}",
                border_style="red",
            )
        )
        return 1
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()
        asyncio.set_event_loop(None)

    console.print("Later, tater!", style="bold green")
    return 0


@click.group(invoke_without_command=True)
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(dir_okay=False),
    default=str(DEFAULT_CONFIG_PATH),
    show_default=True,
    help="Path to YAML or TOML config file",
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Trace request and response headers and bodies",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    help="Log level (default: warning, use --verbose for debug)",
)
@click.pass_context
def main(ctx: click.Context, config_file: str, verbose: bool, log_level: str):
    """Socket2Me - expose a local server through a public tunnel.

    Requests to https://USERNAME.SERVER/ are forwarded to the local server
    configured in the config file. Press Ctrl+C to stop.

    Examples:

        socket2me

        socket2me --config config/client.toml --verbose
    """
    if ctx.invoked_subcommand is not None:
        return

    configure_logging(verbose, log_level)

    try:
        client_config = load_client_config(config_file)
    except Socket2MeError as e:
        console.print(
            Panel(
                f"[red]{e.message}[/red]",
                title=f"Error: {e.code}",
                border_style="red",
            )
        )
        sys.exit(1)

    print_banner(client_config)
    sys.exit(run_session(client_config, verbose=verbose, config_path=config_file))


@main.command()
def version():
    """Show version information."""
    from socket2me import __version__

    console.print(f"[bold]Socket2Me:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


if __name__ == "__main__":
    main()
