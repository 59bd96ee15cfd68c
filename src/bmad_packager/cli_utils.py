"""Shared CLI helpers: console, exit codes, logging setup and message output."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

# Exit codes
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2

# Shared console for output
console = Console()


def _setup_logging(verbose: bool, quiet: bool) -> None:
    """Configure root logging for a CLI invocation.

    Args:
        verbose: Show DEBUG messages.
        quiet: Show only ERROR messages (verbose wins when both are set).

    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=verbose)],
        force=True,
    )


def _error(message: str) -> None:
    console.print(f"[red]Error:[/red] {escape(message)}")


def _warning(message: str) -> None:
    console.print(f"[yellow]Warning:[/yellow] {escape(message)}")


def _info(message: str) -> None:
    console.print(f"[blue]Info:[/blue] {escape(message)}")


def _success(message: str) -> None:
    console.print(f"[green]OK:[/green] {escape(message)}")
