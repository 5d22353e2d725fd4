"""
Loguru sinks for the pipeline CLI.

Messages go to stderr; `LOG_FILE` (or `--log-file`) adds a rotating file that
keeps a record of long seed runs.
"""

import os
import sys
from pathlib import Path

from loguru import logger

from pipeline.config import settings

CONSOLE_FORMAT = "<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | <level>{message}</level>"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <7} | {name}:{function} - {message}"


def setup_logging(level: str | None = None, log_file: Path | None = None) -> None:
    """Replace the loguru sinks: stderr at `level`, plus `log_file` when given."""
    level = (level or settings.pipeline.log_level).upper()
    log_file = log_file or settings.pipeline.log_file

    logger.remove()
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level=level, format=FILE_FORMAT, rotation="10 MB", retention=5)
        logger.debug(f"Logging to {log_file}")


if os.environ.get("DISABLE_LOGGING") != "1":
    setup_logging()
