"""CLI commands for perpsim.

This package provides the command-line interface for the simulator:
account registration, trading, wallet adjustments, transfers and the
leaderboard.
"""

from perpsim.cli.main import cli, main

__all__ = ["cli", "main"]
