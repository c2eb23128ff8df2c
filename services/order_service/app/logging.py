import sys

from loguru import logger

from .config import get_config

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)

_configured_level = None


def configure_logging(level: str = None) -> None:
    """(Re)install the stderr sink at the given level, defaulting to the config."""
    global _configured_level
    level = (level or get_config().log_level).upper()
    if level == _configured_level:
        return
    logger.remove()
    logger.configure(extra={"name": "order_service"})
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
    _configured_level = level


def get_logger(name: str = None):
    """Return the application logger, bound to ``name`` when given."""
    configure_logging()
    if name:
        return logger.bind(name=name)
    return logger
