"""The start/stop state machine run by each invocation.

Idle (no session file) --toggle--> Recording --toggle--> Idle. Every
transition happens under the session lock; pre-flight checks run before the
lock so a missing binary or credential never touches persisted state.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from typing import Callable, Literal

from .common.encoding import human_readable_bytes, sample_format, wav_bytes_per_minute
from .common.errors import (
    BusyError,
    CaptureError,
    MissingCredentialError,
    MissingDependencyError,
    ProcessingError,
    SessionCorruptError,
    TranscriptionFailedError,
)
from .common.fs import ensure_dirs, file_size, safe_unlink, session_base_id
from .common.logs import attach_session_log
from .common.settings import Settings
from .common.transcription import Backend, select_backend, transcribe_file
from .negotiate import negotiate
from .notify import Notifier, hand_off_transcript
from .probe import Capabilities, detect_default_device, probe_capabilities
from .recorder import (
    discard_pipe,
    finalize_audio,
    select_transcription_input,
    start_pipeline,
)
from .session import Session, SessionStore, try_begin_session
from .supervisor import CAPTURE_COMMAND, PROCESSOR_COMMAND, is_stale, stop_pipeline

logger = logging.getLogger(__name__)

REQUIRED_COMMANDS = (CAPTURE_COMMAND, PROCESSOR_COMMAND)

Action = Literal["toggle", "start", "stop"]


class Toggle:
    def __init__(
        self,
        settings: Settings,
        notifier: Notifier | None = None,
        *,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        probe: Callable[[str, float], Capabilities] = probe_capabilities,
        which: Callable[[str], str | None] = shutil.which,
        copy: Callable[[str], None] | None = None,
    ) -> None:
        self.settings = settings
        self.notifier = notifier or Notifier(enabled=settings.notify_enable)
        self.store = SessionStore(settings.session_file())
        self._popen = popen
        self._probe = probe
        self._which = which
        self._copy = copy
        self._backend: Backend | None = None

    # ---- Pre-flight ----
    def preflight(self) -> None:
        for cmd in REQUIRED_COMMANDS:
            if self._which(cmd) is None:
                raise MissingDependencyError(cmd)
        self._backend = select_backend(self.settings)

    # ---- Entry point ----
    def run(self, action: Action = "toggle") -> int:
        """Perform one invocation; return the process exit code."""
        try:
            self.preflight()
        except MissingDependencyError as e:
            logger.error("Error: %s", e)
            self.notifier.report("error", f"{e.command} not found", title="Missing dependency")
            return 1
        except MissingCredentialError as e:
            logger.error("Missing API token: %s", e)
            self.notifier.report("error", "Missing API token")
            return 1

        ensure_dirs(self.settings.state_path(), self.settings.work_path())
        try:
            with try_begin_session(self.store, self.settings.lock_file()) as (_mode, session):
                if session is None:
                    if action == "stop":
                        logger.info("No session; nothing to stop.")
                        return 0
                    return self._start()
                if action == "start":
                    logger.info("Already recording %s", session.base_id)
                    return 0
                return self._stop(session)
        except BusyError:
            logger.warning("Lock busy: another voicetoggle operation in progress.")
            self.notifier.notify("Voice typing busy", "Another operation is in progress")
            return 1
        except SessionCorruptError as e:
            logger.error("Session file corrupt: %s", e)
            self.notifier.report("error", "Session corrupt")
            return 1

    def status(self) -> Session | None:
        """Current session without taking the lock (read-only)."""
        try:
            return self.store.load()
        except SessionCorruptError:
            return None

    # ---- Transitions ----
    def _start(self) -> int:
        s = self.settings
        work = s.work_path()
        base_id = session_base_id(work)
        attach_session_log(work / f"{base_id}.log")

        device = s.device or detect_default_device()
        caps = self._probe(device, s.probe_timeout)
        params = negotiate(
            caps,
            record_formats=s.record_formats,
            output_formats=s.output_formats,
            target_rate=s.record_rate,
            channels=s.preferred_channels,
            force_record_format=s.force_record_format,
            force_output_format=s.force_output_format,
            output_rate=s.output_rate,
            max_output_rate=s.max_output_rate,
        )
        session = Session.create(
            base_id,
            work,
            device,
            params,
            raw_formats=" ".join(caps.formats),
            loudnorm_mode=s.loudnorm_mode,
        )
        rate = wav_bytes_per_minute(
            params.capture_channels,
            params.capture_rate,
            sample_format(params.capture_format).bit_depth,
        )
        logger.info(
            "Recording from device '%s' record_format=%s output_format=%s rate=%s channels=%s (%s/min)",
            device,
            params.capture_format,
            params.output_format,
            params.capture_rate,
            params.capture_channels,
            human_readable_bytes(rate),
        )

        try:
            pipeline = start_pipeline(session, s, popen=self._popen)
        except CaptureError as e:
            logger.error("Cannot start recording: %s", e)
            self.notifier.report("error", str(e))
            return 0

        self.store.commit(session)
        if pipeline.output_seen:
            self.notifier.report("recording", "Trigger again to stop")
        else:
            self.notifier.report("recording", "Waiting for audio; trigger again to stop")
        return 0

    def _stop(self, session: Session) -> int:
        attach_session_log(session.log_path)
        if is_stale(session):
            logger.warning(
                "Fallback: no capture process and no audio file; starting new recording instead."
            )
            self.store.clear()
            discard_pipe(session)
            return self._start()

        logger.info("Stopping recording %s", session.base_id)
        self.notifier.report("processing", "Stopping recording")
        try:
            report = stop_pipeline(session, timeout=self.settings.stop_timeout)
            if report.processor_forced:
                logger.warning("processor was killed; output may be truncated")
            self._transcribe(session)
            hand_off_transcript(session.transcript_path, self.notifier, copy=self._copy)
        finally:
            discard_pipe(session)
            self.store.clear()
        return 0

    def _transcribe(self, session: Session) -> None:
        try:
            out = finalize_audio(session, self.settings)
        except ProcessingError as e:
            logger.error("Audio processing failed: %s", e)
            self.notifier.report("error", f"Audio processing failed: {e}")
            return
        logger.info("Final audio %s (%s)", out.name, human_readable_bytes(file_size(out)))

        source = select_transcription_input(session, self.settings)
        if source is None:
            logger.error("No audio to transcribe for %s", session.base_id)
            return
        backend = self._backend or select_backend(self.settings)
        try:
            transcribe_file(
                source,
                backend,
                transcript_path=session.transcript_path,
                response_path=session.response_path,
                timeout=self.settings.request_timeout,
            )
        except TranscriptionFailedError as e:
            logger.error("Transcription failed: %s", e)
            self.notifier.report("error", str(e), title="Transcription failed")
            return
        if not self.settings.keep_original and source != session.original_path:
            safe_unlink(session.original_path)

