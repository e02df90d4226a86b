"""Session persistence and the lock serializing toggle invocations.

The presence of the session file is the toggle's state: absent means idle,
present means a recording is running. Every read-modify-write of that file
happens while holding an exclusive flock on a separate lock file.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Iterator, Literal

from .common.errors import BusyError, SessionCorruptError
from .negotiate import Negotiated

logger = logging.getLogger(__name__)

Mode = Literal["start", "stop"]


@dataclass
class Session:
    base_id: str
    work_dir: str
    device: str
    capture_format: str
    capture_rate: int
    capture_channels: int
    output_format: str
    output_rate: int
    output_path: str
    capture_pid: int = 0
    processor_pid: int = 0
    raw_formats: str = ""
    loudnorm_mode: str = "dynamic"
    started_at: float = 0.0

    @classmethod
    def create(
        cls,
        base_id: str,
        work_dir: Path,
        device: str,
        params: Negotiated,
        *,
        raw_formats: str = "",
        loudnorm_mode: str = "dynamic",
    ) -> "Session":
        return cls(
            base_id=base_id,
            work_dir=str(work_dir),
            device=device,
            capture_format=params.capture_format,
            capture_rate=params.capture_rate,
            capture_channels=params.capture_channels,
            output_format=params.output_format,
            output_rate=params.output_rate,
            output_path=str(work_dir / f"{base_id}.wav"),
            raw_formats=raw_formats,
            loudnorm_mode=loudnorm_mode,
            started_at=time.time(),
        )

    def path(self, suffix: str) -> Path:
        """Return the per-session working file with `suffix`, e.g. ".txt"."""
        return Path(self.work_dir) / f"{self.base_id}{suffix}"

    @property
    def fifo_path(self) -> Path:
        return self.path(".fifo")

    @property
    def original_path(self) -> Path:
        return self.path(".orig.wav")

    @property
    def stage_path(self) -> Path:
        return self.path(".stage.wav")

    @property
    def transcript_path(self) -> Path:
        return self.path(".txt")

    @property
    def response_path(self) -> Path:
        return self.path(".json")

    @property
    def log_path(self) -> Path:
        return self.path(".log")

    def audio_artifacts(self) -> list[Path]:
        """Audio files the processor may have written for this session."""
        return [Path(self.output_path), self.stage_path, self.original_path]

    def negotiated(self) -> Negotiated:
        return Negotiated(
            capture_format=self.capture_format,
            capture_rate=self.capture_rate,
            capture_channels=self.capture_channels,
            output_format=self.output_format,
            output_rate=self.output_rate,
            output_channels=self.capture_channels,
        )


class SessionStore:
    """The session file at a fixed path, written all-or-nothing."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> Session | None:
        """Return the stored session, or None when idle.

        Raises SessionCorruptError when the file exists but is unusable.
        """
        try:
            raw = json.loads(self.path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            raise SessionCorruptError(f"cannot read {self.path}: {e}") from e
        if not isinstance(raw, dict):
            raise SessionCorruptError(f"{self.path} does not hold an object")
        known = {f.name for f in fields(Session)}
        try:
            return Session(**{k: v for k, v in raw.items() if k in known})
        except TypeError as e:
            raise SessionCorruptError(f"{self.path} is missing fields: {e}") from e

    def commit(self, session: Session) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(
            prefix=self.path.name + ".", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(asdict(session), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.info(
            "session: committed %s capture_pid=%s processor_pid=%s",
            session.base_id,
            session.capture_pid,
            session.processor_pid,
        )

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        logger.info("session: removed %s", self.path)


@contextmanager
def session_lock(path: Path, action: str = "") -> Iterator[None]:
    """Hold an exclusive, non-blocking flock on `path` for the block.

    Raises BusyError immediately when another invocation holds it.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    f = open(path, "a+")
    try:
        try:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise BusyError("another voicetoggle operation is in progress") from e
        # Metadata is informational only
        try:
            f.seek(0)
            f.truncate()
            f.write(f"PID={os.getpid()}\nTIME={time.strftime('%Y-%m-%dT%H:%M:%S%z')}\n")
            if action:
                f.write(f"ACTION_PENDING={action}\n")
            f.flush()
        except OSError:
            pass
        logger.debug("lock: acquired %s action=%s", path, action or "?")
        try:
            yield
        finally:
            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
            logger.debug("lock: released %s", path)
    finally:
        f.close()


@contextmanager
def try_begin_session(
    store: SessionStore, lock_path: Path
) -> Iterator[tuple[Mode, Session | None]]:
    """Lock, then report whether this invocation starts or stops a recording.

    The lock stays held until the block exits. A corrupt session file is
    removed while still locked, then SessionCorruptError propagates.
    """
    action = "stop" if store.exists() else "start"
    with session_lock(lock_path, action=action):
        try:
            session = store.load()
        except SessionCorruptError:
            store.clear()
            raise
        mode: Mode = "stop" if session is not None else "start"
        yield mode, session
