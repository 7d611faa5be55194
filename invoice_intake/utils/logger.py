"""Centralized logging setup for the invoice intake pipeline.

Provides a single stdout handler with consistent formatting, plus a context
adapter that prefixes records with document or case identifiers so that
interleaved log lines from the worker pool stay attributable.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any


class ContextAdapter(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with ``key=value`` context."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        context = " ".join(f"{k}={v}" for k, v in sorted(self.extra.items()))
        return f"[{context}] {msg}", kwargs


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger with a standard format.

    Args:
        level: Logging level string (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()

    if root.handlers:
        root.setLevel(numeric_level)
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str, **context: Any) -> logging.Logger | ContextAdapter:
    """Get a named logger, optionally bound to document or case context.

    Args:
        name: Logger name, typically ``__name__`` of the calling module.
        **context: Identifiers such as ``document_id`` or ``case_id`` to
            prefix every message with.

    Returns:
        The plain logger, or a :class:`ContextAdapter` when context is given.
    """
    logger = logging.getLogger(name)
    if context:
        return ContextAdapter(logger, context)
    return logger
