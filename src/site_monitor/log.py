from __future__ import annotations

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

from . import config


def setup_logging(verbose: bool = False, console: Optional[Console] = None) -> None:
    """Route diagnostics through rich so they render above the live table."""
    handler = RichHandler(
        console=console,
        show_path=False,
        log_time_format=config.LOG_TIME_FORMAT,
        rich_tracebacks=True,
    )
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    # asyncio debug chatter is noise here
    logging.getLogger("asyncio").setLevel(logging.WARNING)
