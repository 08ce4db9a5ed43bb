from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

from . import config

_CONFIGURED = False


class _ConsoleNoiseFilter(logging.Filter):
    """Keep taskboard logs on the console; third-party loggers only at WARNING+."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("taskboard"):
            return True
        if record.name == "py.warnings":
            return record.levelno >= logging.ERROR
        return record.levelno >= logging.WARNING


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None) -> None:
    """Configure root logging once per process.

    Console output goes to stderr. When a log directory is configured a full
    DEBUG log is also written to ``taskboard.log`` inside it.
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    level_name = (level or config.LOG_LEVEL or "INFO").upper()
    console_level = getattr(logging, level_name, logging.INFO)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    ch = logging.StreamHandler(sys.stderr)
    ch.setLevel(console_level)
    ch.setFormatter(fmt)
    ch.addFilter(_ConsoleNoiseFilter())
    root.addHandler(ch)

    target_dir = log_dir if log_dir is not None else config.LOG_DIR
    if target_dir:
        path = Path(target_dir)
        path.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path / "taskboard.log"), encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    logging.captureWarnings(True)
    _CONFIGURED = True
