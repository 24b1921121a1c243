"""
Error log for the azupdates CLI.

The user sees a one-line message; the full traceback, together with the
command line and the store it ran against, is appended to
``azupdates-errors.log`` in the store directory.
"""

import os
import sys
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

ERROR_LOG_FILENAME = "azupdates-errors.log"


def error_log_path(store_path: Optional[Path] = None) -> Path:
    """Error log location: the given store, AZURE_UPDATES_STORE_PATH, or ~/.azupdates."""
    if store_path is None:
        env_store = os.environ.get("AZURE_UPDATES_STORE_PATH")
        store_path = Path(env_store) if env_store else Path.home() / ".azupdates"
    return Path(store_path).expanduser() / ERROR_LOG_FILENAME


def _header(exc: BaseException, context: str, store_path: Path) -> str:
    from . import __version__

    lines = [
        f"[{datetime.now(timezone.utc).isoformat()}] azupdates {__version__}"
        + (f" {context}" if context else ""),
        f"command: {' '.join(sys.argv)}",
        f"store:   {store_path}",
    ]
    # Feed errors carry the HTTP status
    status_code = getattr(exc, "status_code", None)
    if status_code is not None:
        lines.append(f"status:  {status_code}")
    return "\n".join(lines)


def log_exception(
    exc: BaseException,
    context: str = "",
    store_path: Optional[Path] = None,
) -> Path:
    """
    Append the exception with its traceback to the error log.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory the command ran against

    Returns:
        Path to the error log file
    """
    log_path = error_log_path(store_path)
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'=' * 60}\n{_header(exc, context, log_path.parent)}\n{trace}")
    except OSError:
        pass  # an unwritable error log must not mask the original error
    return log_path
