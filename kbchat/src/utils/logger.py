"""
kbchat - Logging
=================
Logger factory plus a stage timer used by the ingestion and query
pipelines.

Verbosity follows ``settings.ENV`` (``dev`` → DEBUG, ``prod`` → WARNING)
unless ``settings.LOG_LEVEL`` names a level explicitly.

Usage:
    from kbchat.src.utils.logger import get_logger, timed
    logger = get_logger(__name__)
    with timed(logger, "[RAG] Retrieval") as t:
        ...
    t.elapsed_ms
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager

from kbchat.config.settings import settings

_ENV_LEVEL_MAP = {"dev": logging.DEBUG, "prod": logging.WARNING}
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _default_level() -> int:
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL.upper())
    return _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return a named logger writing to stdout with the kbchat format.

    Args:
        name:  Typically ``__name__`` of the calling module.
        level: Explicit level override; defaults to the configured level.
    """
    logger = logging.getLogger(name)

    # Handlers are attached once per logger name
    if not logger.handlers:
        resolved_level = level if level is not None else _default_level()
        logger.setLevel(resolved_level)

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(resolved_level)
        handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(handler)
        logger.propagate = False

    return logger


class StageTimer:
    """Elapsed wall time of one pipeline stage, in milliseconds."""

    __slots__ = ("_start", "elapsed_ms")

    def __init__(self) -> None:
        self._start = time.perf_counter()
        self.elapsed_ms = 0.0


    def stop(self) -> float:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000
        return self.elapsed_ms


@contextmanager
def timed(logger: logging.Logger, label: str, level: int = logging.DEBUG) -> Iterator[StageTimer]:
    """Time the enclosed block and log ``"<label> took N.Nms"`` on exit."""
    timer = StageTimer()
    try:
        yield timer
    finally:
        timer.stop()
        logger.log(level, "%s took %.1fms", label, timer.elapsed_ms)
