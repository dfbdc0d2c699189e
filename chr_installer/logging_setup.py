"""Logging configuration for installer runs.

Records go to an append-only, timestamped log file and to a rich console
handler with severity colouring. The file is never rotated.
"""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

FILE_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
FILE_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"

_HANDLER_MARK = "_chr_installer_handler"


def _open_file_handler(log_file: Path) -> tuple[logging.Handler, Path]:
    """Open the log file, falling back to the working directory."""
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_file, mode="a", encoding="utf-8"), log_file
    except OSError:
        fallback = Path.cwd() / log_file.name
        return logging.FileHandler(fallback, mode="a", encoding="utf-8"), fallback


def configure_logging(
    log_file: Path,
    level: str = "INFO",
    *,
    console: Console | None = None,
) -> Path:
    """Install file and console handlers on the root logger.

    Calling this again replaces the handlers installed by a previous call.

    Args:
        log_file: Requested log file path.
        level: Logging level name.
        console: Rich console for terminal output (stderr if omitted).

    Returns:
        The log file actually in use.
    """
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, _HANDLER_MARK, False):
            root.removeHandler(handler)
            handler.close()

    file_handler, actual_path = _open_file_handler(Path(log_file))
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt=FILE_DATEFMT))
    file_handler.setLevel(logging.DEBUG)

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        markup=False,
    )
    console_handler.setLevel(level)

    for handler in (file_handler, console_handler):
        setattr(handler, _HANDLER_MARK, True)
        root.addHandler(handler)
    root.setLevel(logging.DEBUG)

    logging.getLogger(__name__).debug(
        "Logging initialized (requested=%s, actual=%s)", log_file, actual_path
    )
    return actual_path


__all__ = ["configure_logging"]
