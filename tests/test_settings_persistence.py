import json
from pathlib import Path

from voicetoggle.common.settings import load_settings, save_settings, Settings


def test_settings_load_defaults_and_roundtrip(tmp_path: Path, monkeypatch) -> None:
    # Direct settings file to temp location
    settings_file = tmp_path / "settings.json"
    monkeypatch.setenv("VOICETOGGLE_SETTINGS_PATH", str(settings_file))
    monkeypatch.delenv("DEEPGRAM_TOKEN", raising=False)
    monkeypatch.delenv("OPEN_AI_TOKEN", raising=False)

    s = load_settings()
    # Defaults
    assert isinstance(s, Settings)
    assert s.record_formats[0] == "S24_LE"
    assert s.loudnorm_mode == "dynamic"

    # Modify and save
    s.device = "hw:2,0"
    s.work_dir = str(tmp_path)
    s.silence_enable = False
    save_settings(s)

    # Reload and verify persistence
    s2 = load_settings()
    assert s2.device == "hw:2,0"
    assert s2.work_dir == str(tmp_path)
    assert s2.silence_enable is False

    # Check file contents are valid JSON
    data = json.loads(settings_file.read_text())
    assert data["device"] == "hw:2,0"


def test_unknown_keys_and_wrong_types_fall_back(tmp_path: Path, monkeypatch) -> None:
    settings_file = tmp_path / "settings.json"
    monkeypatch.setenv("VOICETOGGLE_SETTINGS_PATH", str(settings_file))

    settings_file.write_text(
        json.dumps(
            {
                "device": "default",
                "unknown_key": 123,
                "record_rate": "fast",  # wrong type; should fallback to default
                "silence_threshold_db": -50,  # int accepted for a float setting
                "record_formats": ["S16_LE", 5],
                "loudnorm_mode": "sometimes",
            }
        )
    )

    s = load_settings()
    assert s.device == "default"
    assert s.record_rate == 44_100
    assert s.silence_threshold_db == -50.0
    assert s.record_formats == Settings().record_formats
    assert s.loudnorm_mode == "dynamic"


def test_credentials_come_from_environment_when_unset(tmp_path: Path) -> None:
    env = {
        "VOICETOGGLE_SETTINGS_PATH": str(tmp_path / "missing.json"),
        "DEEPGRAM_TOKEN": "dg",
        "OPEN_AI_TOKEN": "oa",
    }
    s = load_settings(env=env)
    assert s.deepgram_token == "dg"
    assert s.openai_token == "oa"


def test_file_credentials_win_over_environment(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(json.dumps({"openai_token": "from-file"}))
    s = load_settings(path, env={"OPEN_AI_TOKEN": "from-env"})
    assert s.openai_token == "from-file"


def test_directory_override_appends_filename(tmp_path: Path) -> None:
    from voicetoggle.common.settings import get_settings_path

    p = get_settings_path({"VOICETOGGLE_SETTINGS_PATH": str(tmp_path / "conf")})
    assert p == tmp_path / "conf" / "settings.json"


def test_derived_state_paths(tmp_path: Path) -> None:
    s = Settings(state_dir=str(tmp_path / "st"), work_dir=str(tmp_path / "wk"))
    assert s.session_file() == tmp_path / "st" / "session.json"
    assert s.lock_file() == tmp_path / "st" / "lock"
    assert s.work_path() == tmp_path / "wk"
