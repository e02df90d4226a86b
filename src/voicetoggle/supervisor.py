"""Stopping the capture/processor pair started by an earlier invocation.

The processes are not our children by the time we stop them, so liveness
and identity are checked through psutil rather than wait().
"""

from __future__ import annotations

import logging
import signal
import time
from dataclasses import dataclass
from pathlib import Path

import psutil

from .session import Session

logger = logging.getLogger(__name__)

CAPTURE_COMMAND = "arecord"
PROCESSOR_COMMAND = "ffmpeg"


class ProcessHandle:
    """A pid recorded in the session file; 0 means no process."""

    def __init__(self, pid: int) -> None:
        self.pid = int(pid or 0)

    def __repr__(self) -> str:
        return f"ProcessHandle({self.pid})"

    def _process(self) -> psutil.Process | None:
        if self.pid <= 0:
            return None
        try:
            return psutil.Process(self.pid)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            return None

    def is_alive(self) -> bool:
        proc = self._process()
        if proc is None:
            return False
        try:
            return proc.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def command_line(self) -> str:
        proc = self._process()
        if proc is None:
            return ""
        try:
            return " ".join(proc.cmdline())
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return ""

    def command_line_matches(self, pattern: str) -> bool:
        """True if the command line contains `pattern` or cannot be read."""
        cmdline = self.command_line()
        return not cmdline or pattern in cmdline

    def runs(self, pattern: str) -> bool:
        """Alive and, as far as we can tell, still the program we started."""
        return self.is_alive() and self.command_line_matches(pattern)

    def terminate(self, sig: int = signal.SIGTERM) -> bool:
        """Send `sig`; return False when the process is already gone."""
        proc = self._process()
        if proc is None:
            return False
        try:
            proc.send_signal(sig)
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            logger.warning("supervisor: not allowed to signal pid %s", self.pid)
            return False
        return True

    def wait_gone(self, timeout: float, interval: float = 0.1) -> bool:
        """Poll until the process exits or `timeout` passes."""
        deadline = time.monotonic() + timeout
        while self.is_alive():
            if time.monotonic() >= deadline:
                return False
            time.sleep(interval)
        return True


@dataclass
class StopReport:
    capture_was_alive: bool = False
    processor_was_alive: bool = False
    capture_forced: bool = False
    processor_forced: bool = False
    pid_reused: bool = False
    processor_foreign: bool = False
    swept: tuple[int, ...] = ()


def is_stale(
    session: Session,
    capture_name: str = CAPTURE_COMMAND,
    processor_name: str = PROCESSOR_COMMAND,
) -> bool:
    """True when neither process runs and no audio artifact exists.

    A recorded pid now held by some other program counts as not running;
    the session file outlives reboots.
    """
    if ProcessHandle(session.capture_pid).runs(capture_name):
        return False
    if ProcessHandle(session.processor_pid).runs(processor_name):
        return False
    return not any(p.exists() for p in session.audio_artifacts())


def sweep_orphans(work_dir: str | Path, name: str = CAPTURE_COMMAND) -> list[int]:
    """Terminate leftover `name` processes writing into `work_dir`."""
    marker = str(work_dir)
    victims: list[psutil.Process] = []
    for proc in psutil.process_iter(["pid", "name", "cmdline"]):
        try:
            if proc.info["name"] != name:
                continue
            cmdline = proc.info["cmdline"] or []
            if any(marker in arg for arg in cmdline):
                victims.append(proc)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    for proc in victims:
        logger.warning("supervisor: terminating residual %s pid %s", name, proc.pid)
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    if victims:
        _gone, alive = psutil.wait_procs(victims, timeout=1.0)
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
    return [p.pid for p in victims]


def stop_pipeline(
    session: Session,
    *,
    timeout: float = 5.0,
    interval: float = 0.1,
    expected: str = CAPTURE_COMMAND,
    processor_expected: str = PROCESSOR_COMMAND,
) -> StopReport:
    """Stop capture first so the processor drains the pipe and exits.

    Processes already gone count as stopped. Escalates SIGTERM -> SIGKILL
    when the deadline passes. A processor pid whose command line is not
    `processor_expected` is never waited on or signalled.
    """
    report = StopReport()
    capture = ProcessHandle(session.capture_pid)
    processor = ProcessHandle(session.processor_pid)

    report.capture_was_alive = capture.is_alive()
    report.processor_was_alive = processor.is_alive()
    if report.processor_was_alive and not processor.command_line_matches(processor_expected):
        report.processor_foreign = True
        report.processor_was_alive = False
        logger.warning(
            "supervisor: processor pid %s does not look like %s; leaving it alone: %s",
            processor.pid,
            processor_expected,
            processor.command_line(),
        )
    if not report.capture_was_alive:
        logger.info("supervisor: capture pid %s not running", capture.pid or "-")
    else:
        if not capture.command_line_matches(expected):
            # pid reuse; keep going, the pid may still be ours
            report.pid_reused = True
            logger.warning(
                "supervisor: pid %s does not look like %s: %s",
                capture.pid,
                expected,
                capture.command_line(),
            )
        capture.terminate(signal.SIGTERM)

    if report.processor_was_alive and not processor.wait_gone(timeout, interval):
        logger.warning(
            "supervisor: processor pid %s still running after %.1fs; terminating",
            processor.pid,
            timeout,
        )
        report.processor_forced = True
        processor.terminate(signal.SIGTERM)
        if not processor.wait_gone(1.0, interval):
            processor.terminate(signal.SIGKILL)
            processor.wait_gone(1.0, interval)

    if report.capture_was_alive and not capture.wait_gone(1.0, interval):
        logger.warning("supervisor: capture pid %s ignored SIGTERM; killing", capture.pid)
        report.capture_forced = True
        capture.terminate(signal.SIGKILL)
        capture.wait_gone(1.0, interval)

    if capture.is_alive():
        report.swept = tuple(sweep_orphans(session.work_dir, expected))

    if capture.is_alive() or (not report.processor_foreign and processor.is_alive()):
        logger.warning("supervisor: failed to stop all processes for %s", session.base_id)
    else:
        logger.info("supervisor: stopped recording %s", session.base_id)
    return report
