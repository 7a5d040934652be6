"""
Console output helpers shared by the deploy, preflight and manage commands.

Status lines are also handed to the ``llamadeploy.ui`` logger so a deployment
log file receives the same progress the operator sees.
"""

import logging

from rich.console import Console
from rich.text import Text

from llamadeploy import __version__

VERSION = __version__
UI_LOGGER = "llamadeploy.ui"

console = Console()
ui_logger = logging.getLogger(UI_LOGGER)

_STATUS_STYLES = {
    "info": ("[blue]INFO[/blue]", logging.INFO),
    "success": ("[green]✓[/green]", logging.INFO),
    "warning": ("[yellow]WARNING[/yellow]", logging.WARNING),
    "error": ("[red]ERROR[/red]", logging.ERROR),
}


def ui_print(message: str, status: str = "info") -> None:
    """Print a single status line.

    Args:
        message: Text to print (may contain rich markup).
        status: One of info, success, warning, error.
    """
    prefix, level = _STATUS_STYLES.get(status, _STATUS_STYLES["info"])
    console.print(f"{prefix} {message}")
    ui_logger.log(level, Text.from_markup(message).plain)


def ui_header(title: str) -> None:
    """Print a boxed header line."""
    rule = "=" * 41
    console.print(f"[cyan]{rule}[/cyan]")
    console.print(f"[bold cyan]{title}[/bold cyan]")
    console.print(f"[cyan]{rule}[/cyan]")
    ui_logger.info(title)


def ui_section(title: str) -> None:
    console.print(f"\n[blue]=== {title} ===[/blue]")
    ui_logger.info("=== %s ===", title)
