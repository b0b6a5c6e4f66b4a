"""Loguru sinks for the server."""

import sys
from pathlib import Path

from loguru import logger

LOG_FORMAT = "{time:HH:mm:ss.SSS} | {level: <7} | {name} | {message}"


def setup_logging(level: str = "INFO", log_file: str | Path | None = None) -> None:
    """Replace loguru's default sink with stderr at `level`, plus a rotating file if given."""
    level = level.upper()
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)

    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(path, level=level, format=LOG_FORMAT, rotation="10 MB", retention=5)

    logger.info(f"Logging configured at level: {level}")
