"""
Gateway subcommand for relay CLI.

Handles: relay gateway [run|status]
"""

import asyncio
import sys
from typing import Any, Dict, Optional

from rich.console import Console
from rich.table import Table

_console = Console()

STATE_STYLES = {
    "ready": "green",
    "connecting": "yellow",
    "degraded": "yellow",
    "disconnected": "red",
}


# =============================================================================
# Gateway Runner
# =============================================================================

def run_gateway(verbose: bool = False):
    """Run the gateway in foreground."""
    from gateway.run import load_environment, start_gateway

    load_environment()

    print("┌─────────────────────────────────────────────────────────┐")
    print("│              Relay Gateway Starting...                  │")
    print("├─────────────────────────────────────────────────────────┤")
    print("│  Telegram + Discord + WhatsApp + node RPC               │")
    print("│  Press Ctrl+C to stop                                   │")
    print("└─────────────────────────────────────────────────────────┘")
    print()

    # Exit with code 1 if the gateway fails to start or a listener dies,
    # so systemd Restart=on-failure will retry on transient errors
    success = asyncio.run(start_gateway(verbose=verbose))
    if not success:
        sys.exit(1)


# =============================================================================
# Status
# =============================================================================

def _configured_rpc():
    from gateway.config import load_gateway_config

    return load_gateway_config().rpc


def render_status(status: Dict[str, Any], console: Optional[Console] = None) -> None:
    """Print the result of the `status` RPC method."""
    c = console or _console

    table = Table(title="Relay Gateway")
    table.add_column("Platform", style="bold cyan")
    table.add_column("State")

    platforms = status.get("platforms") or {}
    for name in sorted(platforms):
        state = platforms[name]
        style = STATE_STYLES.get(state, "dim")
        table.add_row(name, f"[{style}]{state}[/]")
    if not platforms:
        table.add_row("(none enabled)", "")

    c.print(table)

    route = status.get("lastRoute")
    route_text = f"{route['channel']} -> {route['to']}" if route else "(none)"
    c.print(f"[dim]Sessions: {status.get('sessions', 0)} · "
            f"Nodes connected: {status.get('nodes', 0)} · "
            f"Pending system events: {status.get('pendingSystemEvents', 0)}[/]")
    c.print(f"[dim]Last route: {route_text}[/]\n")


def show_status(args):
    """Query a running gateway over RPC and show its status."""
    from gateway.rpc import RpcError, call_gateway

    url = getattr(args, "url", None)
    token = getattr(args, "token", None)
    if not url or not token:
        rpc = _configured_rpc()
        url = url or rpc.url
        token = token or rpc.token
    try:
        status = asyncio.run(call_gateway("status", url=url, token=token))
    except RpcError as e:
        _console.print(f"[red]Gateway not running or unreachable:[/] {e.message}")
        _console.print("Start it with: relay gateway run")
        sys.exit(1)

    render_status(status or {})


# =============================================================================
# Main Command Handler
# =============================================================================

def gateway_command(args):
    """Handle gateway subcommands."""
    subcmd = getattr(args, 'gateway_command', None)

    # Default to run if no subcommand
    if subcmd is None or subcmd == "run":
        verbose = getattr(args, 'verbose', False)
        run_gateway(verbose)
        return

    if subcmd == "status":
        show_status(args)
        return

    print(f"Unknown gateway command: {subcmd}")
    sys.exit(1)
