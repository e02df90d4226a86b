"""Pick capture and output parameters from probed device capabilities.

`negotiate` is total: any Capabilities value, including an empty one,
yields a usable tuple. A suboptimal working capture is preferred over none.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .common.encoding import DEFAULT_FORMAT, output_format_for_capture
from .probe import Capabilities


@dataclass(frozen=True)
class Negotiated:
    capture_format: str
    capture_rate: int
    capture_channels: int
    output_format: str
    output_rate: int
    output_channels: int


def choose_format(
    available: Sequence[str], preferred: Sequence[str], forced: str = ""
) -> str:
    if forced and forced in available:
        return forced
    for fmt in preferred:
        if fmt in available:
            return fmt
    if available:
        return available[0]
    return DEFAULT_FORMAT


def choose_rate(caps: Capabilities, target: int) -> int:
    if caps.rate_range is not None:
        lo, hi = caps.rate_range
        if lo <= target <= hi:
            return target
        return lo if target < lo else hi
    if caps.rates:
        if target in caps.rates:
            return target
        # nearest listed rate, ties to the higher one
        return min(caps.rates, key=lambda r: (abs(r - target), -r))
    return target


def choose_channels(caps: Capabilities, preferred: Sequence[int] = (1,)) -> int:
    for n in preferred:
        if caps.supports_channels(n):
            return n
    if caps.channel_range is not None:
        return caps.channel_range[0]
    if caps.channels:
        return caps.channels[0]
    return 1


def choose_output_format(
    capture_format: str,
    available: Sequence[str],
    allowed: Sequence[str],
    forced: str = "",
) -> str:
    """Map the capture encoding to the encoding sent to the backend.

    24/32-bit captures keep their depth; unknown encodings become 16-bit.
    """
    if forced:
        return forced
    fmt = output_format_for_capture(capture_format)
    if allowed and fmt not in allowed:
        for candidate in allowed:
            if candidate in available:
                return candidate
        return DEFAULT_FORMAT
    return fmt


def negotiate(
    caps: Capabilities,
    *,
    record_formats: Sequence[str],
    output_formats: Sequence[str],
    target_rate: int,
    channels: Sequence[int] = (1,),
    force_record_format: str = "",
    force_output_format: str = "",
    output_rate: int = 0,
    max_output_rate: int = 48_000,
) -> Negotiated:
    capture_format = choose_format(caps.formats, record_formats, force_record_format)
    capture_rate = choose_rate(caps, target_rate)
    capture_channels = choose_channels(caps, channels)
    out_format = choose_output_format(
        capture_format, caps.formats, output_formats, force_output_format
    )
    if output_rate > 0:
        out_rate = output_rate
    else:
        out_rate = min(capture_rate, max_output_rate)
    return Negotiated(
        capture_format=capture_format,
        capture_rate=capture_rate,
        capture_channels=capture_channels,
        output_format=out_format,
        output_rate=out_rate,
        output_channels=capture_channels,
    )
