"""
Logging setup for applications embedding OmniChat.

Library modules log through ``loguru.logger`` directly; this helper only
installs sinks and is safe to call more than once.
"""

import os
import sys
from typing import Optional

from loguru import logger

_configured = False


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> None:
    """Install a stderr sink and, when ``log_dir`` is given, a rotating file sink."""
    global _configured
    if _configured:
        return

    # only the default stderr handler; diagnostics files keep their sinks
    try:
        logger.remove(0)
    except ValueError:
        pass
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | {message}",
        colorize=True,
    )

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        logger.add(
            os.path.join(log_dir, "omnichat_{time:YYYY-MM-DD}.log"),
            rotation="5 MB",
            retention=3,
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
            enqueue=True,
        )

    _configured = True
