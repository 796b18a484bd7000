"""Root logger configuration for the CLI."""

from __future__ import annotations

import logging
import os
import sys

_NOISY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine")


def setup_logging(level: str | None = None) -> None:
    """Configure the root logger with a stderr console handler.

    ``level`` falls back to ``BATCH_CONTROL_LOG_LEVEL`` and then INFO. Command output
    goes to stdout, so log records are kept on stderr.
    """

    if level is None:
        level = os.getenv("BATCH_CONTROL_LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
        force=True,
    )
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
