from __future__ import annotations

import json
from pathlib import Path

import pytest
import requests

from voicetoggle.common import transcription
from voicetoggle.common.errors import MissingCredentialError, TranscriptionFailedError
from voicetoggle.common.settings import Settings
from voicetoggle.common.transcription import (
    DEEPGRAM_URL,
    OPENAI_URL,
    Backend,
    deepgram_backend,
    openai_backend,
    select_backend,
    transcribe_file,
)


class FakeResponse:
    def __init__(self, body: bytes, status: int = 200) -> None:
        self.content = body
        self.status_code = status
        self.text = body.decode("utf-8")

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


@pytest.fixture
def posted(monkeypatch):
    calls: list[dict] = []

    def install(response):
        def fake_post(url, **kwargs):
            data = kwargs.get("data")
            if hasattr(data, "read"):
                kwargs["data"] = data.read()
            calls.append({"url": url, **kwargs})
            if isinstance(response, Exception):
                raise response
            return response

        monkeypatch.setattr(transcription.requests, "post", fake_post)
        return calls

    return install


@pytest.fixture
def audio(tmp_path: Path) -> Path:
    p = tmp_path / "rec.wav"
    p.write_bytes(b"RIFF....WAVE")
    return p


def test_deepgram_wins_when_both_tokens_set() -> None:
    backend = select_backend(Settings(deepgram_token="dg", openai_token="oa"))
    assert backend.name == "deepgram"
    assert backend.headers["Authorization"] == "Token dg"


def test_openai_used_when_only_its_token_set() -> None:
    backend = select_backend(Settings(openai_token="oa"))
    assert backend.name == "openai"
    assert backend.headers["Authorization"] == "Bearer oa"


def test_missing_credentials() -> None:
    with pytest.raises(MissingCredentialError):
        select_backend(Settings())


def test_deepgram_request_and_extraction(audio: Path, tmp_path: Path, posted) -> None:
    payload = {"results": {"channels": [{"alternatives": [{"transcript": "hello world"}]}]}}
    calls = posted(FakeResponse(json.dumps(payload).encode()))
    out = tmp_path / "rec.txt"
    raw = tmp_path / "rec.json"

    text = transcribe_file(audio, deepgram_backend("dg"), transcript_path=out, response_path=raw)

    assert text == "hello world"
    assert out.read_text() == "hello world"
    assert json.loads(raw.read_text()) == payload
    (call,) = calls
    assert call["url"] == DEEPGRAM_URL
    assert call["headers"]["Content-Type"] == "audio/wav"
    assert call["params"]["model"] == "nova-3-general"
    assert call["data"] == b"RIFF....WAVE"


def test_openai_plain_text_strips_trailing_newline(audio: Path, tmp_path: Path, posted) -> None:
    calls = posted(FakeResponse(b"hello there\n\n"))
    out = tmp_path / "rec.txt"

    text = transcribe_file(audio, openai_backend("oa"), transcript_path=out)

    assert text == "hello there"
    assert out.read_text() == "hello there"
    (call,) = calls
    assert call["url"] == OPENAI_URL
    assert call["data"] == {"model": "whisper-1", "response_format": "text"}
    assert "file" in call["files"]


def test_stub_backend_field_path(audio: Path, tmp_path: Path, posted) -> None:
    posted(FakeResponse(b'{"transcript":"hello world"}'))
    stub = Backend(name="stub", url="http://stub.invalid/", headers={}, json_path=("transcript",))
    out = tmp_path / "rec.txt"
    assert transcribe_file(audio, stub, transcript_path=out) == "hello world"
    assert out.read_bytes() == b"hello world"


def test_http_error_leaves_no_transcript(audio: Path, tmp_path: Path, posted) -> None:
    posted(FakeResponse(b'{"err_msg":"bad key"}', status=401))
    out = tmp_path / "rec.txt"
    with pytest.raises(TranscriptionFailedError):
        transcribe_file(audio, deepgram_backend("dg"), transcript_path=out)
    assert not out.exists()


def test_network_error(audio: Path, tmp_path: Path, posted) -> None:
    posted(requests.ConnectionError("offline"))
    with pytest.raises(TranscriptionFailedError):
        transcribe_file(audio, openai_backend("oa"), transcript_path=tmp_path / "t.txt")


def test_malformed_payload(audio: Path, tmp_path: Path, posted) -> None:
    out = tmp_path / "rec.txt"
    posted(FakeResponse(b'{"results": {"channels": []}}'))
    with pytest.raises(TranscriptionFailedError):
        transcribe_file(audio, deepgram_backend("dg"), transcript_path=out)
    assert not out.exists()

    posted(FakeResponse(b"<html>gateway</html>"))
    with pytest.raises(TranscriptionFailedError):
        transcribe_file(audio, deepgram_backend("dg"), transcript_path=out)


def test_missing_audio(tmp_path: Path) -> None:
    with pytest.raises(TranscriptionFailedError):
        transcribe_file(tmp_path / "nope.wav", openai_backend("oa"), transcript_path=tmp_path / "t.txt")
