from __future__ import annotations

import logging
import sys
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def configure_logging(
    verbose: bool = False,
    logger_name: Optional[str] = None,
    rich: bool = True,
) -> logging.Logger:
    """
    Configure process-wide logging and return a scoped logger.

    Interactive use gets a Rich console handler; ``rich=False`` falls back to a
    plain line format suitable for log collectors.
    """
    level = logging.DEBUG if verbose else logging.INFO
    if rich:
        handler: logging.Handler = RichHandler(console=Console(stderr=True), show_time=True, show_path=False)
        logging.basicConfig(level=level, format="%(message)s", handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=level,
            format=LOG_FORMAT,
            datefmt=DATE_FORMAT,
            handlers=[logging.StreamHandler(sys.stderr)],
            force=True,
        )
    logger = logging.getLogger(logger_name or "conveyor")
    logger.debug("Logging configured with level %s", logging.getLevelName(level))
    return logger
