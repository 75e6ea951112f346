"""Logging setup for command-line and server entry points."""

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(level: str = "INFO", console: Console | None = None) -> None:
    """Install a rich log handler on the root logger.

    Library modules only call ``logging.getLogger(__name__)``; entry points
    call this once with the configured level.

    Args:
        level: Logging level name.
        console: Optional console to render to (defaults to stderr).
    """
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


__all__ = ["configure_logging"]
