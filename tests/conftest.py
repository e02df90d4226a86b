from __future__ import annotations

import subprocess
from pathlib import Path

import numpy as np
import pytest
import soundfile as sf

from voicetoggle.common.logs import detach_session_log
from voicetoggle.common.settings import Settings


@pytest.fixture(autouse=True)
def _no_session_log():
    yield
    detach_session_log()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        device="hw:1,0",
        state_dir=str(tmp_path / "state"),
        work_dir=str(tmp_path / "work"),
        deepgram_token="dg-key",
        notify_enable=False,
        start_poll_timeout=0.5,
        stop_timeout=0.3,
    )


def write_tone(path: Path, seconds: float = 0.1, rate: int = 44_100, level: float = 0.1) -> None:
    frames = int(seconds * rate)
    sf.write(str(path), np.full(frames, level, dtype="float32"), rate, subtype="PCM_16")


class FakeLauncher:
    """Stands in for subprocess.Popen when starting the pipeline.

    Each launch is backed by a real `sleep` so pids are live for psutil; a
    processor launch also writes a short tone to its output path.
    """

    def __init__(self, write_output: bool = True, fail_on: str | None = None) -> None:
        self.write_output = write_output
        self.fail_on = fail_on
        self.commands: list[list[str]] = []
        self.procs: list[subprocess.Popen] = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(list(cmd))
        if self.fail_on == cmd[0]:
            raise FileNotFoundError(cmd[0])
        if cmd[0] == "ffmpeg" and self.write_output:
            write_tone(Path(cmd[-1]))
        proc = subprocess.Popen(["sleep", "30"])
        self.procs.append(proc)
        return proc

    def programs(self) -> list[str]:
        return [c[0] for c in self.commands]

    def cleanup(self) -> None:
        for p in self.procs:
            if p.poll() is None:
                p.kill()
            p.wait()


@pytest.fixture
def launcher():
    fake = FakeLauncher()
    yield fake
    fake.cleanup()
