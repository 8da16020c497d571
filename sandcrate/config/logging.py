"""
Logging configuration for Sandcrate.

Sandcrate is a library, so the root logger is left quiet by default and only
the ``sandcrate`` logger is raised to the requested level. Executions run on
worker threads, so the default format carries the thread name.
"""
import logging
import sys
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s"

# Chatty dependencies: the docker SDK logs every HTTP round trip to the daemon at DEBUG.
ENGINE_LOGGERS = ("docker", "urllib3")

LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _to_level(level: str, default: int) -> int:
    return LEVEL_MAP.get(level.upper(), default)


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
    root_level: str = "WARNING",
    engine_level: str = "WARNING",
) -> None:
    """Configure handlers and levels.

    Args:
        level: Level for the ``sandcrate`` logger tree.
        log_file: Optional file to log to in addition to stdout.
        format_string: Record format; defaults to one including the thread name.
        root_level: Level for everything else, e.g. the host application's loggers.
        engine_level: Level for the container engine client loggers.
    """
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=_to_level(root_level, logging.WARNING),
        format=format_string or DEFAULT_FORMAT,
        handlers=handlers,
    )

    logging.getLogger("sandcrate").setLevel(_to_level(level, logging.INFO))
    for name in ENGINE_LOGGERS:
        logging.getLogger(name).setLevel(_to_level(engine_level, logging.WARNING))
