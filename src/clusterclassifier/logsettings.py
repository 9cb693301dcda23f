"""Logging setup and verbosity levels shared by the controller."""

from __future__ import annotations

import logging
import sys

LOG_INFO = 0
LOG_DEBUG = 5
LOG_VERBOSE = 10

_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def python_level(verbosity: int) -> int:
    if verbosity >= LOG_DEBUG:
        return logging.DEBUG
    return logging.INFO


def configure_logging(verbosity: int = LOG_INFO, stream=None) -> logging.Logger:
    root = logging.getLogger("clusterclassifier")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root.addHandler(handler)
    root.setLevel(python_level(verbosity))
    root.propagate = False
    return root


class ValuesAdapter(logging.LoggerAdapter):
    """Appends ``key=value`` context to every message."""

    def process(self, msg, kwargs):
        values = self.extra or {}
        if not values:
            return msg, kwargs
        context = " ".join(f"{key}={value}" for key, value in values.items())
        return f"{msg} [{context}]", kwargs


def with_values(logger: logging.Logger | logging.LoggerAdapter, **values: object) -> ValuesAdapter:
    if isinstance(logger, logging.LoggerAdapter):
        merged = dict(logger.extra or {})
        merged.update(values)
        return ValuesAdapter(logger.logger, merged)
    return ValuesAdapter(logger, values)
