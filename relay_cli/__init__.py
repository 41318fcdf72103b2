"""
Relay CLI - command line for the relay gateway.

Provides subcommands for:
- relay gateway      - Run the messaging gateway
- relay status       - Show a running gateway's status
- relay nodes        - Pair and drive companion nodes
"""

__version__ = "0.1.0"
