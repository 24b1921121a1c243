"""
Logging configuration for azupdates.

Library chatter is suppressed by default. Nothing is ever written to stdout,
which carries the MCP stdio transport.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union

OPS_LOG_FILENAME = "azupdates-ops.log"

# Third-party loggers that are noisy at INFO
_LIBRARY_LOGGERS = ("httpx", "httpcore", "mcp")


def is_verbose_env() -> bool:
    """True when AZURE_UPDATES_VERBOSE asks for debug output."""
    return os.environ.get("AZURE_UPDATES_VERBOSE", "").lower() in ("1", "true", "yes")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    Silences per-request logging from httpx/httpcore and the MCP server's
    request chatter, and Python warnings.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _LIBRARY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("azupdates", *_LIBRARY_LOGGERS):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path: Union[str, Path]) -> RotatingFileHandler:
    """Configure a persistent operations log for a store.

    Writes to {store_path}/azupdates-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(store_path) / OPS_LOG_FILENAME
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    pkg_logger = logging.getLogger("azupdates")
    pkg_logger.addHandler(handler)
    # Let INFO through even in quiet mode
    if pkg_logger.level == logging.NOTSET or pkg_logger.level > logging.INFO:
        pkg_logger.setLevel(logging.INFO)

    return handler


def remove_ops_log(handler: RotatingFileHandler) -> None:
    """Detach and close a handler returned by configure_ops_log."""
    logging.getLogger("azupdates").removeHandler(handler)
    handler.close()
