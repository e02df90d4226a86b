"""Transcription backends for voicetoggle.

Exactly one backend is used per recording, chosen by which credential is
configured. Deepgram wins when both are set.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Sequence

import requests

from .errors import MissingCredentialError, TranscriptionFailedError
from .settings import Settings

logger = logging.getLogger(__name__)

DEEPGRAM_URL = "https://api.deepgram.com/v1/listen"
OPENAI_URL = "https://api.openai.com/v1/audio/transcriptions"


@dataclass(frozen=True)
class Backend:
    """How to post an audio file to one provider and read the text back.

    `json_path` walks the decoded JSON response (str keys, int indexes);
    None means the response body is the transcript itself.
    """

    name: str
    url: str
    headers: Mapping[str, str]
    params: Mapping[str, str] = field(default_factory=dict)
    form: Mapping[str, str] | None = None  # multipart fields; None = raw body
    content_type: str = "audio/wav"
    json_path: Sequence[str | int] | None = None


def deepgram_backend(token: str) -> Backend:
    return Backend(
        name="deepgram",
        url=DEEPGRAM_URL,
        headers={"Authorization": f"Token {token}"},
        params={
            "model": "nova-3-general",
            "smart_format": "true",
            "detect_language": "true",
        },
        json_path=("results", "channels", 0, "alternatives", 0, "transcript"),
    )


def openai_backend(token: str) -> Backend:
    return Backend(
        name="openai",
        url=OPENAI_URL,
        headers={"Authorization": f"Bearer {token}"},
        form={"model": "whisper-1", "response_format": "text"},
    )


def select_backend(settings: Settings) -> Backend:
    """Deepgram if its token is set, else OpenAI; fixed priority."""
    if settings.deepgram_token:
        return deepgram_backend(settings.deepgram_token)
    if settings.openai_token:
        return openai_backend(settings.openai_token)
    raise MissingCredentialError(
        "set deepgram_token or openai_token (or DEEPGRAM_TOKEN / OPEN_AI_TOKEN)"
    )


def extract_json_field(payload: Any, path: Sequence[str | int]) -> str:
    node = payload
    for key in path:
        try:
            node = node[key]
        except (KeyError, IndexError, TypeError) as e:
            raise TranscriptionFailedError(f"response has no {'.'.join(map(str, path))}") from e
    if not isinstance(node, str):
        raise TranscriptionFailedError(f"transcript field is {type(node).__name__}, not text")
    return node


def _post(backend: Backend, audio_path: Path, timeout: float) -> requests.Response:
    with open(audio_path, "rb") as audio:
        if backend.form is not None:
            return requests.post(
                backend.url,
                headers=dict(backend.headers),
                params=dict(backend.params),
                data=dict(backend.form),
                files={"file": (audio_path.name, audio, backend.content_type)},
                timeout=timeout,
            )
        headers = {**backend.headers, "Content-Type": backend.content_type}
        return requests.post(
            backend.url,
            headers=headers,
            params=dict(backend.params),
            data=audio,
            timeout=timeout,
        )


def transcribe_file(
    audio_path: str | Path,
    backend: Backend,
    *,
    transcript_path: Path,
    response_path: Path | None = None,
    timeout: float = 120.0,
) -> str:
    """Send `audio_path` to `backend`, write and return the transcript.

    The transcript file is written only on success and never ends with a
    newline. Raises TranscriptionFailedError on any request or payload error.
    """
    src = Path(audio_path)
    if not src.exists():
        raise TranscriptionFailedError(f"audio file {src} not found")

    logger.info("transcription: %s <- %s", backend.name, src.name)
    try:
        resp = _post(backend, src, timeout)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise TranscriptionFailedError(f"{backend.name} request failed: {e}") from e

    if backend.json_path is None:
        text = resp.text
    else:
        if response_path is not None:
            try:
                response_path.write_bytes(resp.content)
            except OSError as e:
                logger.warning("transcription: cannot keep raw response: %s", e)
        try:
            payload = resp.json()
        except ValueError as e:
            raise TranscriptionFailedError(f"{backend.name} returned invalid JSON") from e
        text = extract_json_field(payload, backend.json_path)

    text = text.rstrip("\r\n")
    transcript_path.write_text(text, encoding="utf-8")
    logger.info("transcription: wrote %d chars to %s", len(text), transcript_path.name)
    return text

