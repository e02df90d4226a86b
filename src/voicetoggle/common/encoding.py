"""Sample format table shared by the negotiator and the ffmpeg pipeline.

Format names follow ALSA/arecord (``S16_LE``, ``S24_3LE``...). Each one maps
to the ffmpeg raw demuxer used to read the capture pipe and the PCM codec
used when writing WAV files.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SampleFormat:
    name: str
    demuxer: str  # ffmpeg -f for raw input
    codec: str  # ffmpeg -c:a for WAV output
    bit_depth: int
    # Linear gain restoring full scale when samples sit low in a wider container
    container_gain: int = 1


SAMPLE_FORMATS: dict[str, SampleFormat] = {
    "S16_LE": SampleFormat("S16_LE", "s16le", "pcm_s16le", 16),
    "S24_3LE": SampleFormat("S24_3LE", "s24le", "pcm_s24le", 24),
    # 24 valid bits, LSB-aligned in 32-bit words
    "S24_LE": SampleFormat("S24_LE", "s32le", "pcm_s24le", 24, container_gain=256),
    "S24_32LE": SampleFormat("S24_32LE", "s32le", "pcm_s24le", 24, container_gain=256),
    "S32_LE": SampleFormat("S32_LE", "s32le", "pcm_s32le", 32),
    "FLOAT_LE": SampleFormat("FLOAT_LE", "f32le", "pcm_f32le", 32),
    "U8": SampleFormat("U8", "u8", "pcm_u8", 8),
}

DEFAULT_FORMAT = "S16_LE"

# Output encoding derived from the capture encoding. Anything missing here
# falls back to 16-bit.
_OUTPUT_FOR_CAPTURE = {
    "S16_LE": "S16_LE",
    "S24_LE": "S24_LE",
    "S24_3LE": "S24_LE",
    "S24_32LE": "S24_LE",
    "S32_LE": "S32_LE",
}


def sample_format(name: str) -> SampleFormat:
    """Return the table entry for `name`, or the 16-bit default if unknown."""
    return SAMPLE_FORMATS.get(name, SAMPLE_FORMATS[DEFAULT_FORMAT])


def codec_for_format(name: str) -> str:
    return sample_format(name).codec


def output_format_for_capture(name: str) -> str:
    return _OUTPUT_FOR_CAPTURE.get(name, DEFAULT_FORMAT)


def wav_bytes_per_minute(channels: int, sample_rate: int, bit_depth: int) -> int:
    bytes_per_sec = sample_rate * channels * (bit_depth // 8)
    return bytes_per_sec * 60


def human_readable_bytes(n: int) -> str:
    MiB = 1024 * 1024
    KiB = 1024
    if n >= MiB:
        return f"{n / MiB:.1f} MiB"
    if n >= KiB:
        return f"{n / KiB:.0f} KiB"
    return f"{n} B"
