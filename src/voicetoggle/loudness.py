"""ffmpeg filter graphs plus loudness analysis and application.

Normalization is two pure steps: `analyze` measures a file and returns
LoudnessMetrics or AnalysisFailed, `apply` renders a file with measured
values. Callers route AnalysisFailed (and any failed render) to `convert`,
a plain format/rate/channel conversion, so audio is never dropped.
"""

from __future__ import annotations

import json
import logging
import math
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np
import soundfile as sf

logger = logging.getLogger(__name__)

FFMPEG = "ffmpeg"


@dataclass(frozen=True)
class LoudnessTargets:
    integrated: float = -23.0
    lra: float = 7.0
    true_peak: float = -2.0


@dataclass(frozen=True)
class SilenceSpec:
    threshold_db: float = -60.0
    max_run: float = 1.0
    keep: float = 0.3


@dataclass(frozen=True)
class LoudnessMetrics:
    input_i: float
    input_lra: float
    input_tp: float
    input_thresh: float
    target_offset: float


@dataclass(frozen=True)
class AnalysisFailed:
    reason: str


def silence_filter(spec: SilenceSpec) -> str:
    """Trim leading silence and shrink inner runs longer than max_run to keep."""
    thr = f"{spec.threshold_db:g}dB"
    return (
        "silenceremove="
        f"start_periods=1:start_silence={spec.keep:g}:start_threshold={thr}:"
        f"stop_periods=-1:stop_duration={spec.max_run:g}:"
        f"stop_silence={spec.keep:g}:stop_threshold={thr}"
    )


def loudnorm_filter(
    targets: LoudnessTargets, metrics: LoudnessMetrics | None = None, *, json_summary: bool = False
) -> str:
    parts = [
        f"loudnorm=I={targets.integrated:g}",
        f"LRA={targets.lra:g}",
        f"TP={targets.true_peak:g}",
    ]
    if metrics is not None:
        parts += [
            f"measured_I={metrics.input_i:g}",
            f"measured_LRA={metrics.input_lra:g}",
            f"measured_TP={metrics.input_tp:g}",
            f"measured_thresh={metrics.input_thresh:g}",
            f"offset={metrics.target_offset:g}",
            "linear=true",
        ]
    parts.append("print_format=json" if json_summary else "print_format=summary")
    return ":".join(parts)


def filter_chain(
    *,
    gain: int = 1,
    silence: SilenceSpec | None = None,
    loudness: LoudnessTargets | None = None,
) -> str:
    """Comma-joined filter graph; empty string when nothing applies."""
    filters: list[str] = []
    if gain != 1:
        filters.append(f"volume={gain}")
    if silence is not None:
        filters.append(silence_filter(silence))
    if loudness is not None:
        filters.append(loudnorm_filter(loudness))
    return ",".join(filters)


def run_ffmpeg(args: Sequence[str], log_path: Path | None = None) -> subprocess.CompletedProcess:
    """Run ffmpeg with `args`, appending its stderr to `log_path`."""
    cmd = [FFMPEG, "-hide_banner", "-nostats", "-y", *args]
    logger.debug("ffmpeg: %s", " ".join(cmd))
    try:
        proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        logger.error("ffmpeg: cannot run (%s)", e)
        return subprocess.CompletedProcess(cmd, 127, b"", str(e).encode())
    if log_path is not None:
        try:
            with open(log_path, "ab") as f:
                f.write(proc.stderr)
        except OSError:
            pass
    return proc


_JSON_BLOCK = re.compile(r"\{[^{}]*\}", re.S)


def parse_loudnorm_json(output: str) -> LoudnessMetrics | AnalysisFailed:
    """Pull the measurement block loudnorm prints at the end of a pass."""
    blocks = _JSON_BLOCK.findall(output)
    if not blocks:
        return AnalysisFailed("no loudnorm JSON in ffmpeg output")
    try:
        data = json.loads(blocks[-1])
        metrics = LoudnessMetrics(
            input_i=float(data["input_i"]),
            input_lra=float(data["input_lra"]),
            input_tp=float(data["input_tp"]),
            input_thresh=float(data["input_thresh"]),
            target_offset=float(data["target_offset"]),
        )
    except (ValueError, KeyError, TypeError) as e:
        return AnalysisFailed(f"unparsable loudnorm JSON: {e}")
    values = (metrics.input_i, metrics.input_lra, metrics.input_tp, metrics.input_thresh, metrics.target_offset)
    if not all(math.isfinite(v) for v in values):
        # silent or empty input measures as -inf
        return AnalysisFailed(f"non-finite loudness (I={metrics.input_i})")
    return metrics


def analyze(
    src: Path, targets: LoudnessTargets, log_path: Path | None = None
) -> LoudnessMetrics | AnalysisFailed:
    if not src.exists():
        return AnalysisFailed(f"{src.name} missing")
    proc = run_ffmpeg(
        ["-i", str(src), "-af", loudnorm_filter(targets, json_summary=True), "-f", "null", "-"],
        log_path,
    )
    if proc.returncode != 0:
        return AnalysisFailed(f"ffmpeg exited {proc.returncode}")
    return parse_loudnorm_json(proc.stderr.decode("utf-8", errors="ignore"))


def _encode_args(codec: str, rate: int, channels: int) -> list[str]:
    return ["-ac", str(channels), "-ar", str(rate), "-c:a", codec]


def apply(
    src: Path,
    dst: Path,
    targets: LoudnessTargets,
    metrics: LoudnessMetrics,
    *,
    codec: str,
    rate: int,
    channels: int,
    log_path: Path | None = None,
) -> bool:
    proc = run_ffmpeg(
        ["-i", str(src), "-af", loudnorm_filter(targets, metrics), *_encode_args(codec, rate, channels), str(dst)],
        log_path,
    )
    ok = proc.returncode == 0 and dst.exists()
    if ok:
        logger.info(
            "loudness: two-pass normalization -> %s (I=%g LRA=%g TP=%g)",
            dst.name,
            metrics.input_i,
            metrics.input_lra,
            metrics.input_tp,
        )
    else:
        logger.warning("loudness: second pass failed (rc=%s)", proc.returncode)
    return ok


def convert(
    src: Path,
    dst: Path,
    *,
    codec: str,
    rate: int,
    channels: int,
    log_path: Path | None = None,
) -> bool:
    proc = run_ffmpeg(["-i", str(src), *_encode_args(codec, rate, channels), str(dst)], log_path)
    ok = proc.returncode == 0 and dst.exists()
    if ok:
        logger.info("loudness: plain conversion %s -> %s (%s)", src.name, dst.name, codec)
    else:
        logger.warning("loudness: conversion to %s failed (rc=%s)", codec, proc.returncode)
    return ok


def audio_frames(path: Path) -> int:
    """Number of audio frames in `path`; 0 if missing or unreadable."""
    try:
        return int(sf.info(str(path)).frames)
    except (RuntimeError, OSError):
        return 0


def measure_levels(path: Path) -> tuple[float, float]:
    """Return (rms_dbfs, peak_dbfs) of `path`."""
    data, _rate = sf.read(str(path), dtype="float32", always_2d=True)
    if data.size == 0:
        return float("-inf"), float("-inf")
    rms = float(np.sqrt(np.mean(np.square(data, dtype=np.float64))))
    peak = float(np.max(np.abs(data)))
    return _dbfs(rms), _dbfs(peak)


def _dbfs(v: float) -> float:
    return 20.0 * math.log10(v) if v > 0 else float("-inf")


_EBUR128_I = re.compile(r"\bI:\s+(-?\d+(?:\.\d+)?|-inf)\s+LUFS")


def parse_ebur128_summary(output: str) -> float | None:
    """Integrated loudness from ebur128 output; the summary is the last I: line."""
    matches = _EBUR128_I.findall(output)
    if not matches:
        return None
    return float(matches[-1])


def integrated_loudness(path: Path, log_path: Path | None = None) -> float | None:
    """Measure `path` with ffmpeg's ebur128 filter; None if it cannot."""
    proc = run_ffmpeg(["-i", str(path), "-filter_complex", "ebur128", "-f", "null", "-"], log_path)
    if proc.returncode != 0:
        return None
    return parse_ebur128_summary(proc.stderr.decode("utf-8", errors="ignore"))


def verify_loudness(
    path: Path, targets: LoudnessTargets | None = None, log_path: Path | None = None
) -> float | None:
    """Log integrated loudness of the finished file against the target."""
    lufs = integrated_loudness(path, log_path)
    if lufs is None:
        logger.warning("loudness: ebur128 measurement failed for %s", path.name)
        return None
    try:
        rms_db, peak_db = measure_levels(path)
    except (RuntimeError, OSError) as e:
        logger.warning("loudness: cannot read %s: %s", path.name, e)
        rms_db = peak_db = float("-inf")
    target = (targets or LoudnessTargets()).integrated
    logger.info(
        "loudness: post-normalization %s I=%.1f LUFS (target %.1f) rms=%.1f dBFS peak=%.1f dBFS",
        path.name,
        lufs,
        target,
        rms_db,
        peak_db,
    )
    return lufs
