"""Tests covering config file loading, environment overrides and SessionConfig."""

from __future__ import annotations

from pathlib import Path

import pytest

from voicegate import config as config_module
from voicegate.config import SessionConfig

_ENV_KEYS = (
    "DEV",
    "AUDIO_DEV",
    "AUDIO_CHANNELS",
    "CLIPS_DIR",
    "ECHO_CANCELLATION",
    "NOISE_SUPPRESSION",
    "AUTO_GAIN_CONTROL",
    "LOUDNESS_THRESHOLD",
    "SILENCE_DURATION_MS",
    "PREVIEW_DURATION_MS",
    "PRE_TRIGGER_MS",
    "VOLUME_CHECK_INTERVAL_MS",
    "MAX_EVENT_MS",
    "EMISSION_POLICY",
    "RECORDER_MIME_TYPE",
    "RECORDER_TIME_SLICE_MS",
    "RECORDER_HEADER_CHUNKS",
)


def _reset_config_state(monkeypatch) -> None:
    monkeypatch.setattr(config_module, "_cfg_cache", None, raising=False)
    monkeypatch.setattr(config_module, "_search_paths", [], raising=False)
    monkeypatch.setattr(config_module, "_active_config_path", None, raising=False)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def _write_config(monkeypatch, tmp_path: Path, text: str) -> Path:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(text)
    monkeypatch.setenv("VOICEGATE_CONFIG", str(config_path))
    return config_path


def test_yaml_values_merge_over_defaults(monkeypatch, tmp_path: Path) -> None:
    config_path = _write_config(
        monkeypatch,
        tmp_path,
        "segmenter:\n  loudness_threshold: 25\nrecorder:\n  time_slice_ms: 100\n",
    )
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["segmenter"]["loudness_threshold"] == 25
    assert cfg["segmenter"]["silence_duration_ms"] == 1000
    assert cfg["recorder"]["time_slice_ms"] == 100
    assert cfg["recorder"]["mime_type"] == "audio/webm;codecs=opus"
    assert config_module.active_config_path() == config_path.resolve()
    assert config_module.search_paths()[0] == config_path.resolve()


def test_segmenter_env_overrides(monkeypatch, tmp_path: Path) -> None:
    _write_config(monkeypatch, tmp_path, "segmenter:\n  loudness_threshold: 25\n")
    monkeypatch.setenv("LOUDNESS_THRESHOLD", "12.5")
    monkeypatch.setenv("SILENCE_DURATION_MS", "750")
    monkeypatch.setenv("MAX_EVENT_MS", "30000")
    monkeypatch.setenv("EMISSION_POLICY", " WAIT ")
    monkeypatch.setenv("NOISE_SUPPRESSION", "yes")
    monkeypatch.setenv("RECORDER_MIME_TYPE", "audio/ogg;codecs=opus")
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()

    assert cfg["segmenter"]["loudness_threshold"] == 12.5
    assert cfg["segmenter"]["silence_duration_ms"] == 750
    assert cfg["segmenter"]["max_event_ms"] == 30000
    assert cfg["segmenter"]["emission_policy"] == "wait"
    assert cfg["audio"]["noise_suppression"] is True
    assert cfg["recorder"]["mime_type"] == "audio/ogg;codecs=opus"


def test_max_event_env_can_disable_cap(monkeypatch, tmp_path: Path) -> None:
    _write_config(monkeypatch, tmp_path, "segmenter:\n  max_event_ms: 5000\n")
    monkeypatch.setenv("MAX_EVENT_MS", "none")
    _reset_config_state(monkeypatch)

    assert config_module.get_cfg()["segmenter"]["max_event_ms"] is None


def test_invalid_env_value_is_ignored(monkeypatch, tmp_path: Path) -> None:
    _write_config(
        monkeypatch,
        tmp_path,
        "segmenter:\n  pre_trigger_ms: 40\naudio:\n  noise_suppression: true\n",
    )
    monkeypatch.setenv("PRE_TRIGGER_MS", "soon")
    monkeypatch.setenv("NOISE_SUPPRESSION", "maybe")
    monkeypatch.setenv("AUTO_GAIN_CONTROL", "off")
    _reset_config_state(monkeypatch)

    cfg = config_module.get_cfg()
    assert cfg["segmenter"]["pre_trigger_ms"] == 40
    assert cfg["audio"]["noise_suppression"] is True
    assert cfg["audio"]["auto_gain_control"] is False


def test_audio_env_channels_clamped(monkeypatch, tmp_path: Path) -> None:
    _write_config(monkeypatch, tmp_path, "audio:\n  device: hw:CARD=Device,DEV=0\n")
    monkeypatch.setenv("AUDIO_CHANNELS", "99")
    monkeypatch.setenv("AUDIO_DEV", "plughw:1,0")
    _reset_config_state(monkeypatch)

    audio_cfg = config_module.get_cfg()["audio"]
    assert audio_cfg["channels"] == 2
    assert audio_cfg["device"] == "plughw:1,0"


def test_dev_env_enables_dev_mode(monkeypatch, tmp_path: Path) -> None:
    _write_config(monkeypatch, tmp_path, "{}\n")
    monkeypatch.setenv("DEV", "1")
    _reset_config_state(monkeypatch)

    assert config_module.get_cfg()["logging"]["dev_mode"] is True


def test_reload_picks_up_changes(monkeypatch, tmp_path: Path) -> None:
    config_path = _write_config(monkeypatch, tmp_path, "segmenter:\n  preview_duration_ms: 1500\n")
    _reset_config_state(monkeypatch)
    assert config_module.get_cfg()["segmenter"]["preview_duration_ms"] == 1500

    config_path.write_text("segmenter:\n  preview_duration_ms: 2000\n")
    assert config_module.get_cfg()["segmenter"]["preview_duration_ms"] == 1500
    assert config_module.reload_cfg()["segmenter"]["preview_duration_ms"] == 2000


def test_session_config_from_cfg(monkeypatch, tmp_path: Path) -> None:
    _write_config(
        monkeypatch,
        tmp_path,
        "audio:\n  channels: 2\nsegmenter:\n  loudness_threshold: 30\n  emission_policy: wait\n",
    )
    _reset_config_state(monkeypatch)

    session = SessionConfig.from_cfg(pre_trigger_ms=100)

    assert session.loudness_threshold == 30.0
    assert session.emission_policy == "wait"
    assert session.channels == 2
    assert session.pre_trigger_ms == 100
    assert session.header_chunks == 2
    assert session.max_event_ms is None
    assert session.frame_bytes == 48000 * 2 * 20 // 1000


def test_session_config_reads_quoted_yaml_booleans() -> None:
    cfg = {"audio": {"echo_cancellation": "false", "noise_suppression": "On", "auto_gain_control": 0}}
    session = SessionConfig.from_cfg(cfg)
    assert session.echo_cancellation is False
    assert session.noise_suppression is True
    assert session.auto_gain_control is False

    with pytest.raises(ValueError):
        SessionConfig.from_cfg({"audio": {"noise_suppression": "sometimes"}})


def test_session_config_defaults() -> None:
    session = SessionConfig()
    assert session.loudness_threshold == 10.0
    assert session.silence_duration_ms == 1000
    assert session.preview_duration_ms == 1000
    assert session.pre_trigger_ms == 20
    assert session.volume_check_interval_ms == 50
    assert session.time_slice_ms == 50
    assert session.mime_type == "audio/webm;codecs=opus"
    assert not (session.echo_cancellation or session.noise_suppression or session.auto_gain_control)


@pytest.mark.parametrize(
    "changes",
    [
        {"loudness_threshold": 101},
        {"loudness_threshold": -1},
        {"silence_duration_ms": 0},
        {"preview_duration_ms": -5},
        {"pre_trigger_ms": -1},
        {"header_chunks": -1},
        {"channels": 3},
        {"fft_size": 1000},
        {"emission_policy": "block"},
        {"max_event_ms": 500},
        {"mime_type": " "},
        {"min_decibels": -20.0},
    ],
)
def test_session_config_validation(changes) -> None:
    with pytest.raises(ValueError):
        SessionConfig(**changes)
