"""Console logging for the crudbench CLI."""

import logging

from rich.markup import escape

from crudbench.utils import PrefixedLogHandler, console, format_timestamp
from crudbench.cli.tester.models import ServerLogEntry

LEVEL_COLORS = {
    "ERROR": "red",
    "CRITICAL": "red",
    "WARNING": "yellow",
    "WARN": "yellow",
    "INFO": "green",
    "DEBUG": "cyan",
}


# === Setup Functions ===


def setup_console_logging(level: int = logging.WARNING):
    """Send ``crudbench.*`` log records to the console.

    Args:
        level: Minimum level to print (default: WARNING)
    """
    logger = logging.getLogger("crudbench")
    logger.setLevel(level)
    logger.handlers.clear()

    handler = PrefixedLogHandler(prefix="[crudbench]", color="aquamarine1", width=11)
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)

    logger.propagate = False


# === Utility Functions ===


def print_log_entry(entry: ServerLogEntry, raw_output: bool = False):
    """Print one server log entry.

    Args:
        entry: Log entry reported by the backend
        raw_output: If True, print the message only, without timestamp or color
    """
    if raw_output:
        print(entry.message)
        return

    level = entry.level.upper()
    color = LEVEL_COLORS.get(level, "white")
    console.print(
        f"[dim]{format_timestamp(entry.timestamp)}[/dim] | "
        f"[{color}]{level.ljust(7)}[/{color}] | {escape(entry.message)}",
        markup=True,
        highlight=False,
    )
