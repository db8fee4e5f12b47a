"""
Logging configuration for command line use.
"""
import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "WARNING", stream=None) -> logging.Handler:
    """
    Installs a single stream handler on the package logger, replacing any
    handler a previous call installed.

    :param level: Level name such as 'DEBUG' or 'INFO'.
    :param stream: Stream to write to, stderr when omitted.
    :return: The installed handler.
    """
    logger = logging.getLogger("dockhand")
    logger.setLevel(level.upper())
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    handler = logging.StreamHandler(stream)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return handler
