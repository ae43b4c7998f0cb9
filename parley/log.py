from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()

LOGGER_NAME = "parley"


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Route the ``parley`` logger through Rich, sharing the REPL console."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    if any(isinstance(h, RichHandler) for h in logger.handlers):
        return logger

    handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        tracebacks_show_locals=False,
        show_path=False,
        show_time=verbose,
        markup=False,
    )
    handler.setFormatter(logging.Formatter(fmt="%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
