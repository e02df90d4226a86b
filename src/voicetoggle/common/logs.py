"""Logging setup: one application log plus one log per recording session."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_session_handler: logging.Handler | None = None


def configure_logging(log_file: Path | None = None, verbose: bool = False) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setFormatter(formatter)
        root.addHandler(fh)
    if verbose:
        sh = logging.StreamHandler()
        sh.setFormatter(formatter)
        root.addHandler(sh)

    # Reduce noise from external libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def attach_session_log(path: Path) -> None:
    """Mirror all records into `path`, replacing any earlier session log."""
    global _session_handler
    detach_session_log()
    try:
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError as e:
        logging.getLogger(__name__).warning("cannot open session log %s: %s", path, e)
        return
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    _session_handler = handler


def detach_session_log() -> None:
    global _session_handler
    if _session_handler is None:
        return
    logging.getLogger().removeHandler(_session_handler)
    _session_handler.close()
    _session_handler = None
