#!/usr/bin/env python3
"""
Relay CLI - Main entry point.

Usage:
    relay gateway              # Run gateway in foreground
    relay gateway run -v       # Run gateway with debug logging
    relay gateway status       # Show status of a running gateway
    relay status               # Same as `relay gateway status`
    relay nodes list           # Pending and paired nodes
    relay nodes pending        # Pending pairing requests
    relay nodes approve <id>   # Approve a pairing request
    relay nodes reject <id>    # Reject a pairing request
    relay nodes invoke ...     # Invoke a command on a node
    relay nodes camera snap    # Take a photo on a node
    relay nodes camera clip    # Record a short clip on a node
    relay version              # Show version
"""

import argparse
import logging

from relay_cli import __version__

logger = logging.getLogger(__name__)


def cmd_gateway(args):
    """Gateway management commands."""
    from relay_cli.gateway import gateway_command
    gateway_command(args)


def cmd_status(args):
    """Show status of a running gateway."""
    from relay_cli.gateway import show_status
    show_status(args)


def cmd_version(args):
    """Show version."""
    print(f"Relay Gateway v{__version__}")


def main():
    """Main entry point for relay CLI."""
    from relay_cli.nodes import add_nodes_parser

    parser = argparse.ArgumentParser(
        prog="relay",
        description="Relay - chat-provider gateway for a personal assistant",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    relay gateway                         Run messaging gateway
    relay status                          Show gateway status
    relay nodes pending                   List pairing requests
    relay nodes approve <requestId>       Approve a node
    relay nodes camera snap --node phone  Take photos with both cameras

For more help on a command:
    relay <command> --help
"""
    )

    parser.add_argument(
        "--version", "-V",
        action="store_true",
        help="Show version and exit"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # =========================================================================
    # gateway command
    # =========================================================================
    gateway_parser = subparsers.add_parser(
        "gateway",
        help="Messaging gateway management",
        description="Run or inspect the messaging gateway (Telegram, Discord, WhatsApp)"
    )
    gateway_subparsers = gateway_parser.add_subparsers(dest="gateway_command")

    # gateway run (default)
    gateway_run = gateway_subparsers.add_parser("run", help="Run gateway in foreground")
    gateway_run.add_argument("-v", "--verbose", action="store_true")

    # gateway status
    gateway_status = gateway_subparsers.add_parser("status", help="Show gateway status")
    gateway_status.add_argument("--url", help="Gateway WebSocket URL (default: from config)")
    gateway_status.add_argument("--token", help="Gateway RPC token")

    gateway_parser.set_defaults(func=cmd_gateway)

    # =========================================================================
    # status command
    # =========================================================================
    status_parser = subparsers.add_parser(
        "status",
        help="Show status of a running gateway",
        description="Show platform connection states, sessions and nodes"
    )
    status_parser.add_argument("--url", help="Gateway WebSocket URL (default: from config)")
    status_parser.add_argument("--token", help="Gateway RPC token")
    status_parser.set_defaults(func=cmd_status)

    # =========================================================================
    # nodes command
    # =========================================================================
    add_nodes_parser(subparsers)

    # =========================================================================
    # version command
    # =========================================================================
    version_parser = subparsers.add_parser(
        "version",
        help="Show version information"
    )
    version_parser.set_defaults(func=cmd_version)

    # =========================================================================
    # Parse and execute
    # =========================================================================
    args = parser.parse_args()

    # Handle --version flag
    if args.version:
        cmd_version(args)
        return

    # Execute the command
    if hasattr(args, 'func'):
        args.func(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
