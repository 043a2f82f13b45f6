"""Logging setup for Waypoint entry points.

Library modules only create ``logging.getLogger(__name__)`` loggers; the CLI
(or an embedding application) calls ``configure_logging`` once to decide
where records go.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

LOGGER_NAME = "waypoint"


def configure_logging(verbose: bool = False, console: Console | None = None) -> logging.Logger:
    """Attach a rich handler to the ``waypoint`` logger.

    Idempotent: calling again only adjusts the level.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)

    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            show_time=verbose,
        )
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    return logger
