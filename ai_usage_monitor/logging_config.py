"""
Logging setup.

Routes every module logger through a single rich handler on the root logger.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(verbose: bool = False, console: Optional[Console] = None) -> None:
    """Install a RichHandler on the root logger.

    Args:
        verbose: Log at DEBUG instead of INFO
        console: Console to write to (defaults to stderr)
    """
    level = logging.DEBUG if verbose else logging.INFO
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbose,
        rich_tracebacks=True,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, RichHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)
