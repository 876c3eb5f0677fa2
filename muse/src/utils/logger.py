"""
Muse - Logging
===============
Logger factory shared by every Muse module.

Records go to **stderr**: stdout is reserved for the streamed answer,
so ``muse-ask "..." > answer.txt`` captures the answer alone.

Verbosity:
  • ``settings.LOG_LEVEL`` wins when set.
  • Otherwise ``settings.ENV`` decides: ``"dev"`` → DEBUG,
    ``"prod"`` → WARNING.
  • ``set_level()`` changes every Muse logger at runtime (CLI flags).

Usage:
    from muse.src.utils.logger import get_logger
    logger = get_logger(__name__)
    logger.info("[RETRIEVAL] Retrieved context: %d documents found", n)
"""

import logging
import sys

from muse.config.settings import settings

_ROOT_NAME = "muse"

_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}
_DEFAULT_LEVEL = logging.getLevelName(settings.LOG_LEVEL) if settings.LOG_LEVEL else _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)

_FORMATTER = logging.Formatter(fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return a named logger writing to stderr.

    Args:
        name:  Typically ``__name__`` of the calling module.
        level: Explicit level override; defaults to the configured level.
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        resolved_level = level if level is not None else _DEFAULT_LEVEL
        logger.setLevel(resolved_level)

        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(resolved_level)
        handler.setFormatter(_FORMATTER)
        logger.addHandler(handler)

        # Records stay off the root logger (no duplicates under pytest or uvicorn)
        logger.propagate = False

    return logger


def set_level(level: int) -> None:
    """Set ``level`` on every Muse logger, including ones created later."""
    global _DEFAULT_LEVEL
    _DEFAULT_LEVEL = level
    for name, logger in logging.Logger.manager.loggerDict.items():
        if not isinstance(logger, logging.Logger) or not (name == _ROOT_NAME or name.startswith(f"{_ROOT_NAME}.")):
            continue
        logger.setLevel(level)
        for handler in logger.handlers:
            if handler.formatter is _FORMATTER:
                handler.setLevel(level)
