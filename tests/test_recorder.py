from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeLauncher, write_tone
from voicetoggle import recorder
from voicetoggle.common.errors import CaptureError, ProcessingError
from voicetoggle.loudness import AnalysisFailed
from voicetoggle.negotiate import Negotiated
from voicetoggle.recorder import (
    capture_command,
    finalize_audio,
    processor_command,
    select_transcription_input,
    start_pipeline,
)
from voicetoggle.session import Session


def _session(settings, capture_format="S24_LE", mode="dynamic") -> Session:
    work = settings.work_path()
    work.mkdir(parents=True, exist_ok=True)
    params = Negotiated(capture_format, 44_100, 1, "S24_LE", 44_100, 1)
    return Session.create("recording-t", work, "hw:1,0", params, loudnorm_mode=mode)


def _af_values(cmd: list[str]) -> list[str]:
    return [cmd[i + 1] for i, tok in enumerate(cmd) if tok == "-af"]


def test_capture_command(settings) -> None:
    s = _session(settings)
    cmd = capture_command(s, 3600)
    assert cmd[0] == "arecord"
    assert cmd[cmd.index("-f") + 1] == "S24_LE"
    assert cmd[cmd.index("-t") + 1] == "raw"
    assert "--duration=3600" in cmd
    assert cmd[-1] == str(s.fifo_path)


def test_processor_command_dynamic(settings) -> None:
    s = _session(settings)
    cmd = processor_command(s, settings)
    assert cmd[0] == "ffmpeg"
    assert cmd[cmd.index("-f") + 1] == "s32le"
    assert cmd[cmd.index("-i") + 1] == str(s.fifo_path)
    original_af, processed_af = _af_values(cmd)
    assert original_af == "volume=256"
    assert processed_af.startswith("volume=256,silenceremove=")
    assert "loudnorm=" in processed_af
    assert str(s.original_path) in cmd
    assert cmd[-1] == s.output_path
    assert cmd[-2] == "pcm_s24le"


def test_processor_command_two_pass_writes_stage(settings) -> None:
    s = _session(settings, capture_format="S16_LE", mode="two-pass")
    settings.keep_original = False
    cmd = processor_command(s, settings)
    assert cmd[-1] == str(s.stage_path)
    assert str(s.original_path) not in cmd
    (af,) = _af_values(cmd)
    assert "loudnorm" not in af
    assert af.startswith("silenceremove=")


def test_processor_command_without_filters(settings) -> None:
    settings.silence_enable = False
    settings.keep_original = False
    s = _session(settings, capture_format="S16_LE", mode="off")
    cmd = processor_command(s, settings)
    assert "-af" not in cmd


def test_original_written_when_it_is_the_transcription_source(settings) -> None:
    settings.keep_original = False
    settings.transcribe_source = "original"
    s = _session(settings, capture_format="S16_LE")
    assert str(s.original_path) in processor_command(s, settings)


def test_start_pipeline_records_pids(settings, launcher) -> None:
    s = _session(settings)
    pipeline = start_pipeline(s, settings, popen=launcher)
    assert launcher.programs() == ["ffmpeg", "arecord"]
    assert s.processor_pid == launcher.procs[0].pid
    assert s.capture_pid == launcher.procs[1].pid
    assert pipeline.output_seen
    assert s.fifo_path.exists()


def test_start_pipeline_output_poll_is_non_fatal(settings) -> None:
    settings.start_poll_timeout = 0.2
    fake = FakeLauncher(write_output=False)
    try:
        pipeline = start_pipeline(_session(settings), settings, popen=fake)
        assert not pipeline.output_seen
    finally:
        fake.cleanup()


def test_start_pipeline_capture_failure_cleans_up(settings) -> None:
    fake = FakeLauncher(fail_on="arecord")
    s = _session(settings)
    try:
        with pytest.raises(CaptureError):
            start_pipeline(s, settings, popen=fake)
        assert fake.procs[0].wait(timeout=2) is not None
        assert not s.fifo_path.exists()
        assert s.capture_pid == 0
    finally:
        fake.cleanup()


@pytest.fixture
def conversions(monkeypatch):
    calls = []

    def fake_convert(src, dst, *, codec, rate, channels, log_path=None):
        calls.append((Path(src).name, codec))
        if codec == "pcm_s24le" and getattr(fake_convert, "fail_wide", False):
            return False
        write_tone(Path(dst))
        return True

    monkeypatch.setattr(recorder, "convert", fake_convert)
    fake_convert.calls = calls
    return fake_convert


def test_finalize_uses_processor_output(settings, conversions) -> None:
    s = _session(settings)
    write_tone(Path(s.output_path))
    assert finalize_audio(s, settings) == Path(s.output_path)
    assert conversions.calls == []


def test_finalize_falls_back_to_unprocessed_copy(settings, conversions) -> None:
    s = _session(settings)
    Path(s.output_path).write_bytes(b"")  # processor produced nothing usable
    write_tone(s.original_path)
    assert finalize_audio(s, settings) == Path(s.output_path)
    assert conversions.calls == [("recording-t.orig.wav", "pcm_s24le")]


def test_finalize_without_audio_raises(settings, conversions) -> None:
    with pytest.raises(ProcessingError):
        finalize_audio(_session(settings), settings)
    with pytest.raises(ProcessingError):
        finalize_audio(_session(settings, mode="two-pass"), settings)


def test_finalize_two_pass_applies_metrics(settings, conversions, monkeypatch) -> None:
    s = _session(settings, mode="two-pass")
    write_tone(s.stage_path)
    applied = []
    monkeypatch.setattr(recorder, "analyze", lambda src, targets, log_path=None: "metrics")

    def fake_apply(src, dst, targets, metrics, **kw):
        applied.append((Path(src).name, metrics, kw["codec"]))
        return True

    monkeypatch.setattr(recorder, "apply", fake_apply)
    finalize_audio(s, settings)
    assert applied == [("recording-t.stage.wav", "metrics", "pcm_s24le")]
    assert conversions.calls == []


def test_finalize_two_pass_analysis_failure_converts_plainly(settings, conversions, monkeypatch) -> None:
    s = _session(settings, mode="two-pass")
    write_tone(s.stage_path)
    monkeypatch.setattr(
        recorder, "analyze", lambda src, targets, log_path=None: AnalysisFailed("empty")
    )
    finalize_audio(s, settings)
    assert conversions.calls == [("recording-t.stage.wav", "pcm_s24le")]


def test_finalize_falls_back_to_16_bit(settings, conversions, monkeypatch) -> None:
    s = _session(settings, mode="two-pass")
    write_tone(s.stage_path)
    monkeypatch.setattr(
        recorder, "analyze", lambda src, targets, log_path=None: AnalysisFailed("x")
    )
    conversions.fail_wide = True
    finalize_audio(s, settings)
    assert [c for _, c in conversions.calls] == ["pcm_s24le", "pcm_s16le"]
    assert s.output_format == "S16_LE"


def test_select_transcription_input(settings) -> None:
    s = _session(settings)
    assert select_transcription_input(s, settings) is None
    write_tone(s.original_path)
    assert select_transcription_input(s, settings) == s.original_path
    write_tone(Path(s.output_path))
    assert select_transcription_input(s, settings) == Path(s.output_path)
    settings.transcribe_source = "original"
    assert select_transcription_input(s, settings) == s.original_path
