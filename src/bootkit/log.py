from __future__ import annotations

import logging
import sys
from pathlib import Path

LOG_FORMAT = "%(levelname)s: %(message)s"
FILE_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class _StderrHandler(logging.StreamHandler):
    """Writes to whatever ``sys.stderr`` is at emit time."""

    @property
    def stream(self):
        return sys.stderr

    @stream.setter
    def stream(self, value):
        pass


def level_for(name: str, verbose: int = 0) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        level = logging.WARNING
    if verbose >= 1:
        level = min(level, logging.INFO)
    if verbose >= 2:
        level = logging.DEBUG
    return level


def configure_logging(level: str = "WARNING", file: Path | None = None, *, verbose: int = 0) -> None:
    """Install a stderr handler and, when ``file`` is given, a debug file log.

    Safe to call repeatedly; handlers installed by an earlier call are
    replaced rather than stacked.
    """
    root = logging.getLogger("bootkit")
    for handler in list(root.handlers):
        if getattr(handler, "_bootkit", False):
            root.removeHandler(handler)
            handler.close()

    stream = _StderrHandler()
    stream.setLevel(level_for(level, verbose))
    stream.setFormatter(logging.Formatter(LOG_FORMAT))
    stream._bootkit = True  # type: ignore[attr-defined]
    root.addHandler(stream)

    if file is not None:
        try:
            file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(file, encoding="utf-8")
        except OSError as exc:
            root.warning("Cannot open log file %s: %s", file, exc)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(FILE_LOG_FORMAT))
            file_handler._bootkit = True  # type: ignore[attr-defined]
            root.addHandler(file_handler)

    root.setLevel(logging.DEBUG)
    logging.captureWarnings(True)
