"""Desktop notifications and clipboard handoff."""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Literal

import pyperclip

logger = logging.getLogger(__name__)

State = Literal["idle", "recording", "processing", "error"]

_TITLES: dict[str, str] = {
    "idle": "Transcription ready",
    "recording": "Recording started",
    "processing": "Transcribing",
    "error": "Voice typing error",
}


class Notifier:
    """Best-effort ``notify-send`` wrapper; a no-op when disabled or missing."""

    def __init__(self, enabled: bool = True, app_name: str = "VoiceToggle") -> None:
        self.enabled = enabled
        self.app_name = app_name
        self._cmd = shutil.which("notify-send") if enabled else None

    def notify(self, title: str, body: str = "") -> None:
        logger.info("notify: %s %s", title, body)
        if not self._cmd:
            return
        try:
            subprocess.run(
                [
                    self._cmd,
                    f"--app-name={self.app_name}",
                    "--icon=audio-input-microphone",
                    title,
                    body,
                ],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("notify: notify-send failed: %s", e)

    def report(self, state: State, body: str = "", title: str | None = None) -> None:
        self.notify(title or _TITLES[state], body)


def hand_off_transcript(
    path: Path,
    notifier: Notifier,
    copy: Callable[[str], None] | None = None,
) -> bool:
    """Put the transcript at `path` on the clipboard.

    A missing or empty file is reported as its own condition instead of
    copying nothing.
    """
    if not path.exists():
        logger.error("Transcript file missing: %s", path)
        notifier.report("error", f"Transcript file missing: {path}", title="Transcription failed")
        return False
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        logger.error("Transcript empty: %s", path)
        notifier.report("error", "No speech recognized", title="Transcription empty")
        return False
    try:
        (copy or pyperclip.copy)(text)
    except pyperclip.PyperclipException as e:
        logger.error("clipboard: %s", e)
        notifier.report("error", f"Clipboard unavailable: {e}")
        return False
    logger.info("Transcript copied to clipboard: %s", path)
    notifier.report("idle", "CTRL-V")
    return True
