"""Rich-based console output: colored log lines and the fatal-error line."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

stderr_console = Console(stderr=True)


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(), rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # aiohttp is chatty at DEBUG
    logging.getLogger("aiohttp").setLevel(max(logging.getLevelName(level), logging.INFO))


def fatal(message: str) -> None:
    stderr_console.print(f"[bold red]{escape(message)}[/]", highlight=False)
