"""
Logging setup for the keyman CLI.

Library modules only call ``logging.getLogger(__name__)``; handlers are
attached here, once per process, by the CLI entry point.

    ~/.keyman/keyman.log    rotating operation log (mode 0600)
    stderr                  DEBUG output with --verbose
"""
from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "keyman"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
MAX_LOG_BYTES = 256 * 1024
LOG_BACKUPS = 2

logger = logging.getLogger(__name__)


def configure_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    verbose: bool = False,
) -> logging.Logger:
    """Attach handlers to the ``keyman`` logger, replacing earlier ones."""
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    file_level = getattr(logging, str(level).upper(), logging.INFO)
    root.setLevel(logging.DEBUG if verbose else file_level)
    root.propagate = False

    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                log_file, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS, encoding="utf-8",
            )
            os.chmod(log_file, 0o600)
        except OSError as e:
            # file logging is optional
            logger.debug("log file disabled: %s", e)
        else:
            file_handler.setLevel(file_level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(file_handler)

    if verbose:
        stream_handler = logging.StreamHandler()
        stream_handler.setLevel(logging.DEBUG)
        stream_handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        root.addHandler(stream_handler)

    if not root.handlers:
        root.addHandler(logging.NullHandler())

    return root
