"""Recording pipeline: arecord -> named pipe -> ffmpeg.

The capture process writes raw samples into a fifo; the processor (ffmpeg)
reads the fifo, compresses silence, optionally normalizes loudness and
writes the session's audio files. Both run detached so they outlive the
invocation that started them.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from .common.encoding import codec_for_format, sample_format
from .common.errors import CaptureError, ProcessingError
from .common.fs import safe_unlink
from .common.settings import Settings
from .loudness import (
    AnalysisFailed,
    LoudnessTargets,
    SilenceSpec,
    analyze,
    apply,
    audio_frames,
    convert,
    filter_chain,
    verify_loudness,
)
from .session import Session
from .supervisor import CAPTURE_COMMAND, PROCESSOR_COMMAND, sweep_orphans

logger = logging.getLogger(__name__)

Popen = Callable[..., subprocess.Popen]


@dataclass
class Pipeline:
    capture: subprocess.Popen
    processor: subprocess.Popen
    output_seen: bool = False


def loudness_targets(settings: Settings) -> LoudnessTargets:
    return LoudnessTargets(
        integrated=settings.loudnorm_i,
        lra=settings.loudnorm_lra,
        true_peak=settings.loudnorm_tp,
    )


def silence_spec(settings: Settings) -> SilenceSpec | None:
    if not settings.silence_enable:
        return None
    return SilenceSpec(
        threshold_db=settings.silence_threshold_db,
        max_run=settings.silence_max,
        keep=settings.silence_keep,
    )


def processed_path(session: Session) -> Path:
    """File the processor streams into; normalized later in two-pass mode."""
    if session.loudnorm_mode == "two-pass":
        return session.stage_path
    return Path(session.output_path)


def writes_original(settings: Settings) -> bool:
    return settings.keep_original or settings.transcribe_source == "original"


def capture_command(session: Session, max_duration: int) -> list[str]:
    return [
        CAPTURE_COMMAND,
        "-D", session.device,
        "-f", session.capture_format,
        "-r", str(session.capture_rate),
        "-c", str(session.capture_channels),
        "-t", "raw",
        f"--duration={max_duration}",
        str(session.fifo_path),
    ]  # fmt: skip


def processor_command(session: Session, settings: Settings) -> list[str]:
    fmt = sample_format(session.capture_format)
    cmd = [
        PROCESSOR_COMMAND, "-hide_banner", "-nostats", "-nostdin", "-y",
        "-f", fmt.demuxer,
        "-ar", str(session.capture_rate),
        "-ac", str(session.capture_channels),
        "-i", str(session.fifo_path),
    ]  # fmt: skip

    if writes_original(settings):
        cmd += ["-map", "0:a"]
        gain_only = filter_chain(gain=fmt.container_gain)
        if gain_only:
            cmd += ["-af", gain_only]
        cmd += ["-c:a", fmt.codec, str(session.original_path)]

    two_pass = session.loudnorm_mode == "two-pass"
    chain = filter_chain(
        gain=fmt.container_gain,
        silence=silence_spec(settings),
        loudness=loudness_targets(settings) if session.loudnorm_mode == "dynamic" else None,
    )
    cmd += ["-map", "0:a"]
    if chain:
        cmd += ["-af", chain]
    if two_pass:
        cmd += ["-ac", str(session.capture_channels), "-ar", str(session.capture_rate), "-c:a", fmt.codec]
    else:
        cmd += [
            "-ac", str(session.capture_channels),
            "-ar", str(session.output_rate),
            "-c:a", codec_for_format(session.output_format),
        ]  # fmt: skip
    cmd.append(str(processed_path(session)))
    return cmd


def _spawn(cmd: list[str], log_path: Path, popen: Popen) -> subprocess.Popen:
    with open(log_path, "ab") as log:
        return popen(
            cmd,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=log,
            start_new_session=True,
        )


def wait_for_file(path: Path, timeout: float, interval: float = 0.1) -> bool:
    deadline = time.monotonic() + timeout
    while not path.exists():
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval)
    return True


def start_pipeline(
    session: Session, settings: Settings, *, popen: Popen = subprocess.Popen
) -> Pipeline:
    """Start processor then capture, recording their pids in `session`.

    Raises CaptureError if either process cannot be launched.
    """
    swept = sweep_orphans(session.work_dir, CAPTURE_COMMAND)
    if swept:
        logger.warning("recorder: removed residual capture processes %s", swept)

    fifo = session.fifo_path
    safe_unlink(fifo)
    os.mkfifo(fifo, 0o600)

    proc_cmd = processor_command(session, settings)
    logger.info("recorder: processor %s", " ".join(proc_cmd))
    try:
        processor = _spawn(proc_cmd, session.path(".ffmpeg.log"), popen)
    except OSError as e:
        safe_unlink(fifo)
        raise CaptureError(f"cannot start {PROCESSOR_COMMAND}: {e}") from e

    cap_cmd = capture_command(session, settings.max_duration)
    logger.info("recorder: capture %s", " ".join(cap_cmd))
    try:
        capture = _spawn(cap_cmd, session.path(".arecord.log"), popen)
    except OSError as e:
        processor.kill()
        safe_unlink(fifo)
        raise CaptureError(f"cannot start {CAPTURE_COMMAND}: {e}") from e

    session.capture_pid = capture.pid
    session.processor_pid = processor.pid
    pipeline = Pipeline(capture=capture, processor=processor)
    pipeline.output_seen = wait_for_file(processed_path(session), settings.start_poll_timeout)
    if capture.poll() is not None:
        processor.kill()
        safe_unlink(fifo)
        raise CaptureError(
            f"{CAPTURE_COMMAND} exited with {capture.returncode}; "
            f"see {session.path('.arecord.log')}"
        )
    if not pipeline.output_seen:
        logger.info("recorder: no output after %.1fs; continuing", settings.start_poll_timeout)
    return pipeline


def finalize_audio(session: Session, settings: Settings) -> Path:
    """Produce the session's output file once the pipeline has stopped.

    Two-pass mode normalizes the staged file now. Every mode falls back to a
    plain conversion (and then to 16-bit) rather than dropping audio.
    Raises ProcessingError when no captured audio exists at all.
    """
    out = Path(session.output_path)
    log_path = session.path(".ffmpeg.log")
    targets = loudness_targets(settings)
    codec = codec_for_format(session.output_format)
    channels = session.capture_channels

    source: Path | None = None
    if session.loudnorm_mode == "two-pass":
        for candidate in (session.stage_path, session.original_path):
            if audio_frames(candidate) > 0:
                source = candidate
                break
        if source is None:
            raise ProcessingError(f"no captured audio for {session.base_id}")
        result = analyze(source, targets, log_path)
        if isinstance(result, AnalysisFailed):
            logger.warning("recorder: loudness analysis failed (%s); plain conversion", result.reason)
        elif apply(
            source,
            out,
            targets,
            result,
            codec=codec,
            rate=session.output_rate,
            channels=channels,
            log_path=log_path,
        ):
            _after_finalize(out, settings, targets, log_path)
            return out
    else:
        if audio_frames(out) > 0:
            _after_finalize(out, settings, targets, log_path)
            return out
        if audio_frames(session.original_path) > 0:
            logger.warning("recorder: processed audio unusable; converting unprocessed copy")
            source = session.original_path
        else:
            raise ProcessingError(f"no captured audio for {session.base_id}")

    if convert(source, out, codec=codec, rate=session.output_rate, channels=channels, log_path=log_path):
        _after_finalize(out, settings, targets, log_path)
        return out
    if codec != "pcm_s16le" and convert(
        source, out, codec="pcm_s16le", rate=session.output_rate, channels=channels, log_path=log_path
    ):
        logger.info("recorder: fell back to pcm_s16le")
        session.output_format = "S16_LE"
        _after_finalize(out, settings, targets, log_path)
        return out
    raise ProcessingError(f"cannot convert {source.name}")


def _after_finalize(out: Path, settings: Settings, targets: LoudnessTargets, log_path: Path) -> None:
    if settings.verify_loudness:
        verify_loudness(out, targets, log_path)


def select_transcription_input(session: Session, settings: Settings) -> Path | None:
    """Pick the processed or unprocessed artifact per `transcribe_source`."""
    processed = Path(session.output_path)
    original = session.original_path
    if settings.transcribe_source == "original":
        order = (original, processed)
    else:
        order = (processed, original)
    for p in order:
        if p.exists():
            return p
    return None


def discard_pipe(session: Session) -> None:
    safe_unlink(session.fifo_path)
    safe_unlink(session.stage_path)
