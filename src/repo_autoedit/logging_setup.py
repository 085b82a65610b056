"""Console logging for the ``repo_autoedit`` package.

Modules log through ``logging.getLogger(__name__)``. Only the root project
logger owns a handler; children propagate to it. The console level comes
from ``REPO_AUTOEDIT_LOG_LEVEL`` (a level name or number) unless verbose
output is requested.
"""

import logging
import os

ROOT_LOGGER_NAME = "repo_autoedit"
LOG_LEVEL_ENV = "REPO_AUTOEDIT_LOG_LEVEL"
FORMAT = "%(asctime)s | %(name)s | %(levelname)-8s | %(message)s"
DTFMT = "%Y-%m-%d %H:%M:%S"


def parse_level(value: str | None, default: int = logging.WARNING) -> int:
    """Parse a level name ("INFO") or number ("20"); ``default`` on bad input."""
    if value is None or not value.strip():
        return default
    value = value.strip()
    if value.isdigit():
        return int(value)
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else default


def configure_logging(verbose: bool = False) -> logging.Logger:
    """Attach a console handler to the project logger once and set its level.

    Calling again only updates the level.
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    level = logging.DEBUG if verbose else parse_level(os.getenv(LOG_LEVEL_ENV))

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(fmt=FORMAT, datefmt=DTFMT))
        root.addHandler(handler)
        root.propagate = False

    root.setLevel(level)
    for handler in root.handlers:
        handler.setLevel(level)
    root.debug("Logging configured at %s", logging.getLevelName(level))
    return root
