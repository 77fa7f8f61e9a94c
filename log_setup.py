"""Process-wide logging for the web app and the CLI.

configure() is called once by each entry point; library modules only do
``logging.getLogger(__name__)``.

  stderr            requested level (``LOG_LEVEL``, default INFO), one line per record
  <log dir>/app.log DEBUG, with file:line, rotated at 5 MB keeping 5 backups

The log directory is ``ICON_LOG_DIR`` when set, otherwise ``logs/`` beside
this file.  costs.py writes its cost log to the same directory.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

LOGS_DIR = Path(os.environ.get("ICON_LOG_DIR") or Path(__file__).parent / "logs")
LOG_FILE_NAME = "app.log"

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  %(name)s: %(message)s"
_FILE_FMT = "%(asctime)s  %(levelname)-7s  %(threadName)-12s %(name)s  %(filename)s:%(lineno)d  %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"

# Request logging from urllib3 and werkzeug, plugin probing from PIL
_QUIET = ("urllib3", "werkzeug", "PIL")


def _resolve_level(level: Optional[str]) -> int:
    name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def configure(
    level: Optional[str] = None,
    log_dir: Optional[Path] = None,
    root: Optional[logging.Logger] = None,
) -> bool:
    """Install the stderr and rotating-file handlers on ``root`` (the root logger).

    Returns False without touching anything when it already has handlers
    (a second entry point, or a test runner that captures logs).
    """
    root = root or logging.getLogger()
    if root.handlers:
        return False

    log_dir = Path(log_dir) if log_dir else LOGS_DIR
    log_dir.mkdir(parents=True, exist_ok=True)
    root.setLevel(logging.DEBUG)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(_resolve_level(level))
    console.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    root.addHandler(console)

    rotating = logging.handlers.RotatingFileHandler(
        log_dir / LOG_FILE_NAME,
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    rotating.setLevel(logging.DEBUG)
    rotating.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
    root.addHandler(rotating)

    for name in _QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)
    return True
