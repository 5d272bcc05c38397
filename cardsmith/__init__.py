"""
Cardsmith - batch card renderer
Turns a declarative card template and rows of data into finished raster images
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

__version__ = "0.3.0"

LOG_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}"


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure loguru logging"""
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)

    if log_file:
        # Ensure logs directory exists
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)

        logger.add(
            log_file,
            rotation="1 day",
            retention="30 days",
            level=level,
            format=LOG_FORMAT
        )
