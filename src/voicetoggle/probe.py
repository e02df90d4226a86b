"""Capture device discovery and capability probing.

Probing runs ``arecord --dump-hw-params`` under a hard timeout. Any failure
(timeout, missing binary, unparsable dump) yields FALLBACK_CAPABILITIES so
starting a recording never blocks on a misbehaving device.
"""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    formats: tuple[str, ...] = ()
    rate_range: tuple[int, int] | None = None
    rates: tuple[int, ...] = ()
    channel_range: tuple[int, int] | None = None
    channels: tuple[int, ...] = ()

    def supports_channels(self, n: int) -> bool:
        if self.channel_range is not None:
            lo, hi = self.channel_range
            return lo <= n <= hi
        return n in self.channels


FALLBACK_CAPABILITIES = Capabilities(formats=("S16_LE",), rates=(44_100,), channels=(1,))

# [lo hi], (lo hi], [lo hi), (lo hi)
_RANGE_RE = re.compile(r"([\[(])\s*(\d+)\s+(\d+)\s*([\])])")


def _parse_span(values: str) -> tuple[tuple[int, int] | None, tuple[int, ...]]:
    m = _RANGE_RE.search(values)
    if m:
        lo, hi = int(m.group(2)), int(m.group(3))
        if m.group(1) == "(":
            lo += 1
        if m.group(4) == ")":
            hi -= 1
        if lo > hi:
            raise ValueError(f"empty range: {values!r}")
        return (lo, hi), ()
    nums = tuple(int(tok) for tok in values.split())
    return None, nums


def parse_hw_params(dump: str) -> Capabilities:
    """Parse the output of ``arecord --dump-hw-params``.

    Raises ValueError when the dump holds no FORMAT line.
    """
    fields: dict[str, str] = {}
    for line in dump.splitlines():
        key, sep, rest = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        if key in ("FORMAT", "RATE", "CHANNELS") and key not in fields:
            fields[key] = rest.strip()

    formats = tuple(fields.get("FORMAT", "").split())
    if not formats:
        raise ValueError("no FORMAT line in hw params dump")
    rate_range, rates = _parse_span(fields.get("RATE", ""))
    channel_range, channels = _parse_span(fields.get("CHANNELS", ""))
    return Capabilities(
        formats=formats,
        rate_range=rate_range,
        rates=rates,
        channel_range=channel_range,
        channels=channels,
    )


def probe_capabilities(device: str, timeout: float = 2.0) -> Capabilities:
    """Query `device` for supported formats/rates/channels within `timeout`."""
    # the dump is printed before capture starts; one sample is enough
    cmd = ["arecord", "-D", device, "-s", "1", "--dump-hw-params", "/dev/null"]
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
        output = proc.stdout
    except subprocess.TimeoutExpired as e:
        output = e.output or b""
        if b"FORMAT:" not in output:
            logger.warning("probe: %s did not answer within %.1fs; using fallback", device, timeout)
            return FALLBACK_CAPABILITIES
        logger.info("probe: %s timed out after printing its parameters", device)
    except OSError as e:
        logger.warning("probe: cannot run arecord (%s); using fallback", e)
        return FALLBACK_CAPABILITIES

    dump = output.decode("utf-8", errors="ignore")
    try:
        caps = parse_hw_params(dump)
    except ValueError as e:
        logger.warning("probe: unusable hw params for %s (%s); using fallback", device, e)
        return FALLBACK_CAPABILITIES
    logger.info(
        "probe: device=%s formats=%s rate=%s channels=%s",
        device,
        " ".join(caps.formats),
        caps.rate_range or caps.rates,
        caps.channel_range or caps.channels,
    )
    return caps


_CARD_RE = re.compile(r"card (\d+):.*, device (\d+):")


def detect_default_device(timeout: float = 2.0) -> str:
    """Return ``default`` under PipeWire/PulseAudio, else the first ALSA card."""
    if shutil.which("wpctl") or shutil.which("pactl"):
        return "default"
    try:
        proc = subprocess.run(
            ["arecord", "-l"],
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired):
        return "default"
    for line in proc.stdout.decode("utf-8", errors="ignore").splitlines():
        m = _CARD_RE.search(line)
        if m:
            return f"plughw:{m.group(1)},{m.group(2)}"
    return "default"


def list_input_devices() -> list[str]:
    """Return names of input-capable devices as reported by PortAudio."""
    # Loaded on demand; probing and toggling never touch PortAudio
    import sounddevice as sd

    devs = sd.query_devices()
    return [d["name"] for d in devs if d.get("max_input_channels", 0) > 0]
