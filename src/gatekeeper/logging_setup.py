"""
Loguru sink setup for gatekeeper.

Call setup_logging() once at startup. Library code only ever imports
``from loguru import logger`` and never configures sinks itself.
"""

import sys
from typing import TYPE_CHECKING, Optional

from loguru import logger

if TYPE_CHECKING:
    from .config import GatekeeperConfig


TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(config: Optional["GatekeeperConfig"] = None) -> int:
    """
    Replace loguru's default sink with one configured from settings.

    Args:
        config: Gatekeeper configuration (defaults when None)

    Returns:
        Sink id, usable with ``logger.remove(sink_id)``
    """
    level = "INFO"
    json_output = False
    if config is not None:
        level = config.logging.level.upper()
        json_output = config.logging.json_output

    logger.remove()
    if json_output:
        return logger.add(sys.stderr, level=level, serialize=True, enqueue=True)
    return logger.add(sys.stderr, level=level, format=TEXT_FORMAT, enqueue=True)
