"""Settings persistence for voicetoggle.

Settings are read once at startup and passed explicitly to every component.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import json
import os
from pathlib import Path
from typing import Any, Mapping


APP_NAME = "voicetoggle"

LOUDNORM_MODES = ("off", "dynamic", "two-pass")
TRANSCRIBE_SOURCES = ("processed", "original")


def _default_config_path(env: Mapping[str, str]) -> Path:
    # Allow tests or callers to override location
    override = env.get("VOICETOGGLE_SETTINGS_PATH")
    if override:
        p = Path(override).expanduser()
        # If the override looks like a file path, use it directly
        if p.suffix:
            return p
        # Else treat as directory and append filename
        return p / "settings.json"
    base = Path(env.get("XDG_CONFIG_HOME", Path.home() / ".config")) / APP_NAME
    return base / "settings.json"


@dataclass
class Settings:
    # Capture device; empty means auto-detect
    device: str = ""

    # Format preferences, first match wins
    record_formats: list[str] = field(
        default_factory=lambda: ["S24_LE", "S24_3LE", "S32_LE", "S16_LE"]
    )
    output_formats: list[str] = field(
        default_factory=lambda: ["S16_LE", "S24_LE", "S32_LE"]
    )
    force_record_format: str = ""
    force_output_format: str = ""
    record_rate: int = 44_100
    output_rate: int = 0  # 0 = capture rate clamped to max_output_rate
    max_output_rate: int = 48_000
    preferred_channels: list[int] = field(default_factory=lambda: [1])

    # Timing bounds (seconds)
    max_duration: int = 3600
    probe_timeout: float = 2.0
    start_poll_timeout: float = 3.0
    stop_timeout: float = 5.0
    request_timeout: float = 120.0

    # Silence compression
    silence_enable: bool = True
    silence_threshold_db: float = -60.0
    silence_max: float = 1.0  # longer silence runs get compressed
    silence_keep: float = 0.3  # silence retained of each compressed run

    # Loudness normalization
    loudnorm_mode: str = "dynamic"  # off | dynamic | two-pass
    loudnorm_i: float = -23.0
    loudnorm_lra: float = 7.0
    loudnorm_tp: float = -2.0
    verify_loudness: bool = False

    # Audio artifacts
    keep_original: bool = True
    transcribe_source: str = "processed"  # processed | original

    # Notifications
    notify_enable: bool = True

    # Credentials
    deepgram_token: str = ""
    openai_token: str = ""

    # Locations; empty means the XDG defaults below
    state_dir: str = ""
    work_dir: str = ""

    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return Path.home() / ".local" / "state" / APP_NAME

    def work_path(self) -> Path:
        if self.work_dir:
            return Path(self.work_dir).expanduser()
        return Path.home() / ".local" / "var" / APP_NAME

    def session_file(self) -> Path:
        return self.state_path() / "session.json"

    def lock_file(self) -> Path:
        return self.state_path() / "lock"


def get_settings_path(env: Mapping[str, str] | None = None) -> Path:
    return _default_config_path(os.environ if env is None else env)


def _coerce(default: Any, value: Any) -> Any:
    """Return `value` if it matches the type of `default`, else `default`."""
    if isinstance(default, bool) or isinstance(value, bool):
        return value if type(value) is type(default) else default  # noqa: E721
    if isinstance(default, float) and isinstance(value, int):
        return float(value)
    if isinstance(default, list):
        if isinstance(value, list) and all(
            type(v) is type(default[0]) for v in value  # noqa: E721
        ):
            return list(value)
        return list(default)
    return value if type(value) is type(default) else default  # noqa: E721


def load_settings(
    path: Path | None = None, env: Mapping[str, str] | None = None
) -> Settings:
    """Load settings from JSON, then fill credentials from the environment.

    Unknown keys are ignored and wrong-typed values fall back to defaults.
    """
    env = os.environ if env is None else env
    path = path or get_settings_path(env)
    try:
        if path.exists():
            raw = json.loads(path.read_text())
        else:
            raw = {}
    except (OSError, ValueError):
        raw = {}
    if not isinstance(raw, dict):
        raw = {}

    defaults = asdict(Settings())
    data: dict[str, Any] = {}
    for k, v in defaults.items():
        data[k] = _coerce(v, raw[k]) if k in raw else v
    if data["loudnorm_mode"] not in LOUDNORM_MODES:
        data["loudnorm_mode"] = defaults["loudnorm_mode"]
    if data["transcribe_source"] not in TRANSCRIBE_SOURCES:
        data["transcribe_source"] = defaults["transcribe_source"]

    if not data["deepgram_token"]:
        data["deepgram_token"] = env.get("DEEPGRAM_TOKEN", "")
    if not data["openai_token"]:
        data["openai_token"] = env.get("OPEN_AI_TOKEN", "")
    return Settings(**data)


def save_settings(s: Settings, path: Path | None = None) -> None:
    path = path or get_settings_path()
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(s), indent=2))
        os.chmod(path, 0o600)
    except OSError:
        # Best-effort persistence; ignore write errors
        pass
