from __future__ import annotations

import json
from pathlib import Path

import pytest

from config import JsonConfigStore, RecognitionSettings


def test_config_read_write(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    store = JsonConfigStore(path=path)

    assert store.get_api_key() == ""
    assert store.get_hotkey() == "Key.f9"
    assert store.get_language() == "en-US"
    assert store.get_silence_timeout_seconds() == 60

    store.set_api_key("abc")
    store.set_hotkey("Key.f8")
    store.set_language("te-IN")
    store.set_silence_timeout_seconds(15)

    reloaded = JsonConfigStore(path=path)
    assert reloaded.get_api_key() == "abc"
    assert reloaded.get_hotkey() == "Key.f8"
    assert reloaded.recognition_settings() == RecognitionSettings(language="te-IN", silence_timeout_s=15)


def test_config_invalid_json_fallback(tmp_path: Path) -> None:
    path = tmp_path / "config.json"
    path.write_text("{invalid", encoding="utf-8")

    store = JsonConfigStore(path=path)
    assert store.get_api_key() == ""
    assert store.recognition_settings() == RecognitionSettings()


@pytest.mark.parametrize("value", [0, -5, "30", True, None])
def test_invalid_silence_timeout_falls_back(tmp_path: Path, value: object) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"silence_timeout_seconds": value}), encoding="utf-8")

    assert JsonConfigStore(path=path).get_silence_timeout_seconds() == 60


@pytest.mark.parametrize("value", [0, -1])
def test_setting_non_positive_timeout_is_rejected(tmp_path: Path, value: int) -> None:
    store = JsonConfigStore(path=tmp_path / "config.json")

    with pytest.raises(ValueError):
        store.set_silence_timeout_seconds(value)


def test_blank_language_is_rejected(tmp_path: Path) -> None:
    store = JsonConfigStore(path=tmp_path / "config.json")

    with pytest.raises(ValueError):
        store.set_language("  ")
    assert store.get_language() == "en-US"
