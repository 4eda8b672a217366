"""Logging setup shared by the renewal jobs."""

from __future__ import annotations

import logging
import sys
from collections import deque
from pathlib import Path
from typing import List, Optional


LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logger(
    name: str,
    log_file: Optional[Path] = None,
    *,
    level: int = logging.INFO,
    echo: bool = True,
) -> logging.Logger:
    """
    Configure and return a job logger.

    Lines go to stderr (when `echo`) and are appended to `log_file`, so each
    job leaves the same trail in its log file that it prints to the console.
    Calling again replaces the handlers, which lets a job be re-run in the same
    process against a different log directory.

    If the log file cannot be opened (read-only /var/log, no privileges) the
    logger keeps working on stderr only.
    """
    log = logging.getLogger(name)
    for h in list(log.handlers):
        log.removeHandler(h)
        h.close()
    log.setLevel(level)
    log.propagate = False

    fmt = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if echo:
        sh = logging.StreamHandler(sys.stderr)
        sh.setFormatter(fmt)
        log.addHandler(sh)

    if log_file is not None:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(path, encoding="utf-8")
        except OSError as exc:
            print(f"warning: cannot write log file {path}: {exc}", file=sys.stderr)
        else:
            fh.setFormatter(fmt)
            log.addHandler(fh)

    if not log.handlers:
        log.addHandler(logging.NullHandler())
    return log


def tail_lines(path: Path, n: int = 5) -> List[str]:
    """Last `n` lines of a text file; empty when the file is missing or unreadable."""
    try:
        with Path(path).open("r", encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=n)]
    except OSError:
        return []


__all__ = ["setup_logger", "tail_lines", "LOG_FORMAT", "DATE_FORMAT"]
