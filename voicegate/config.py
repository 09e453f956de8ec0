#!/usr/bin/env python3
"""
Unified configuration loader for voicegate.

Load order (first found wins):
  1) VOICEGATE_CONFIG (env, absolute or relative to CWD)
  2) /etc/voicegate/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) <script_dir>/config.yaml (directory of the running script)
  5) ./config.yaml (current working directory)

Environment variables override file values when present.
"""
from __future__ import annotations

import copy
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

log = logging.getLogger("config")

EMISSION_POLICIES = ("drop", "wait")

_DEFAULTS: Dict[str, Any] = {
    "audio": {
        "device": "default",
        "sample_rate": 48000,
        "channels": 1,
        "frame_ms": 20,
        "fft_size": 1024,
        "smoothing_time_constant": 0.3,
        "min_decibels": -100.0,
        "max_decibels": -30.0,
        "echo_cancellation": False,
        "noise_suppression": False,
        "auto_gain_control": False,
    },
    "segmenter": {
        "loudness_threshold": 10.0,
        "silence_duration_ms": 1000,
        "preview_duration_ms": 1000,
        "pre_trigger_ms": 20,
        "volume_check_interval_ms": 50,
        "max_event_ms": None,
        "emission_policy": "drop",
        "emission_wait_timeout_ms": 2000,
    },
    "recorder": {
        "mime_type": "audio/webm;codecs=opus",
        "time_slice_ms": 50,
        "header_chunks": 2,
        "bitrate": "128k",
    },
    "paths": {
        "clips_dir": "/apps/voicegate/clips",
    },
    "logging": {
        "dev_mode": False  # if True or ENV DEV=1, enable verbose debug
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}
            if isinstance(data, dict):
                return data
    except (OSError, yaml.YAMLError) as exc:
        # Ignore parse errors and continue with other locations/defaults
        log.warning("ignoring unreadable config %s: %s", path, exc)
    return {}


def _candidate_search_paths(project_root: Path, script_dir: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv("VOICEGATE_CONFIG")
    if env_cfg:
        search.append(Path(env_cfg).expanduser())
    search.extend(
        [
            Path("/etc/voicegate/config.yaml"),
            project_root / "config.yaml",
            script_dir / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _deep_merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_STRINGS:
        return True
    if lowered in _FALSE_STRINGS:
        return False
    raise ValueError(f"not a boolean: {value!r}")


def _as_bool(value: Any) -> bool:
    # YAML may hand back quoted strings such as "false".
    if isinstance(value, str):
        return _parse_bool(value)
    return bool(value)


def _parse_optional_int(value: str) -> int | None:
    stripped = value.strip().lower()
    if stripped in {"", "none", "null", "off"}:
        return None
    return int(stripped)


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    # DEV mode
    if os.getenv("DEV") == "1":
        cfg.setdefault("logging", {})["dev_mode"] = True
    if "AUDIO_DEV" in os.environ:
        env_device = os.environ["AUDIO_DEV"].strip()
        if env_device:
            cfg.setdefault("audio", {})["device"] = env_device
    if "AUDIO_CHANNELS" in os.environ:
        try:
            channels = int(os.environ["AUDIO_CHANNELS"])
        except ValueError:
            pass
        else:
            cfg.setdefault("audio", {})["channels"] = max(1, min(2, channels))
    if "CLIPS_DIR" in os.environ:
        cfg.setdefault("paths", {})["clips_dir"] = os.environ["CLIPS_DIR"]

    env_map = {
        "ECHO_CANCELLATION": ("audio", "echo_cancellation", _parse_bool),
        "NOISE_SUPPRESSION": ("audio", "noise_suppression", _parse_bool),
        "AUTO_GAIN_CONTROL": ("audio", "auto_gain_control", _parse_bool),
        "LOUDNESS_THRESHOLD": ("segmenter", "loudness_threshold", float),
        "SILENCE_DURATION_MS": ("segmenter", "silence_duration_ms", int),
        "PREVIEW_DURATION_MS": ("segmenter", "preview_duration_ms", int),
        "PRE_TRIGGER_MS": ("segmenter", "pre_trigger_ms", int),
        "VOLUME_CHECK_INTERVAL_MS": ("segmenter", "volume_check_interval_ms", int),
        "MAX_EVENT_MS": ("segmenter", "max_event_ms", _parse_optional_int),
        "EMISSION_POLICY": ("segmenter", "emission_policy", lambda s: s.strip().lower()),
        "RECORDER_MIME_TYPE": ("recorder", "mime_type", str.strip),
        "RECORDER_TIME_SLICE_MS": ("recorder", "time_slice_ms", int),
        "RECORDER_HEADER_CHUNKS": ("recorder", "header_chunks", int),
    }
    for env_key, (section, key, cast) in env_map.items():
        if env_key in os.environ:
            try:
                cfg.setdefault(section, {})[key] = cast(os.environ[env_key])
            except ValueError:
                log.warning("ignoring invalid %s=%r", env_key, os.environ[env_key])


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    # Derive project root relative to this file (voicegate/ -> project root)
    project_root = Path(__file__).resolve().parent.parent

    # Derive script directory (useful for tools run as ./tool.py)
    try:
        script_dir = Path(sys.argv[0]).resolve().parent
    except (IndexError, OSError):
        script_dir = Path.cwd()

    search = _candidate_search_paths(project_root, script_dir)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    for candidate in reversed(search):
        cfg = _deep_merge(cfg, _load_yaml_if_exists(candidate))

    _active_config_path = active

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def active_config_path() -> Path | None:
    if _cfg_cache is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Immutable per-session settings for one capture session."""

    loudness_threshold: float = 10.0
    silence_duration_ms: int = 1000
    preview_duration_ms: int = 1000
    pre_trigger_ms: int = 20
    volume_check_interval_ms: int = 50
    time_slice_ms: int = 50
    mime_type: str = "audio/webm;codecs=opus"
    header_chunks: int = 2
    bitrate: str = "128k"
    echo_cancellation: bool = False
    noise_suppression: bool = False
    auto_gain_control: bool = False
    max_event_ms: int | None = None
    emission_policy: str = "drop"
    emission_wait_timeout_ms: int = 2000
    device: str = "default"
    sample_rate: int = 48000
    channels: int = 1
    frame_ms: int = 20
    fft_size: int = 1024
    smoothing_time_constant: float = 0.3
    min_decibels: float = -100.0
    max_decibels: float = -30.0

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.loudness_threshold) <= 100.0:
            raise ValueError("loudness_threshold must be within 0..100")
        for name in (
            "silence_duration_ms",
            "preview_duration_ms",
            "volume_check_interval_ms",
            "time_slice_ms",
            "emission_wait_timeout_ms",
            "sample_rate",
            "frame_ms",
        ):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.pre_trigger_ms < 0:
            raise ValueError("pre_trigger_ms must not be negative")
        if self.header_chunks < 0:
            raise ValueError("header_chunks must not be negative")
        if self.channels not in (1, 2):
            raise ValueError("channels must be 1 or 2")
        if self.fft_size < 32 or self.fft_size & (self.fft_size - 1):
            raise ValueError("fft_size must be a power of two >= 32")
        if not 0.0 <= self.smoothing_time_constant < 1.0:
            raise ValueError("smoothing_time_constant must be within [0, 1)")
        if self.min_decibels >= self.max_decibels:
            raise ValueError("min_decibels must be below max_decibels")
        if self.emission_policy not in EMISSION_POLICIES:
            raise ValueError(
                f"emission_policy must be one of {', '.join(EMISSION_POLICIES)}"
            )
        if self.max_event_ms is not None and (
            self.max_event_ms <= self.pre_trigger_ms + self.preview_duration_ms
        ):
            raise ValueError(
                "max_event_ms must exceed pre_trigger_ms + preview_duration_ms"
            )
        if not self.mime_type or not self.mime_type.strip():
            raise ValueError("mime_type is required")

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any] | None = None, **overrides: Any) -> "SessionConfig":
        """Build a session config from the nested config dict plus overrides."""
        if cfg is None:
            cfg = get_cfg()
        audio = cfg.get("audio", {}) or {}
        seg = cfg.get("segmenter", {}) or {}
        rec = cfg.get("recorder", {}) or {}
        max_event = seg.get("max_event_ms")
        values: Dict[str, Any] = {
            "loudness_threshold": float(seg.get("loudness_threshold", 10.0)),
            "silence_duration_ms": int(seg.get("silence_duration_ms", 1000)),
            "preview_duration_ms": int(seg.get("preview_duration_ms", 1000)),
            "pre_trigger_ms": int(seg.get("pre_trigger_ms", 20)),
            "volume_check_interval_ms": int(seg.get("volume_check_interval_ms", 50)),
            "max_event_ms": int(max_event) if max_event is not None else None,
            "emission_policy": str(seg.get("emission_policy", "drop")).strip().lower(),
            "emission_wait_timeout_ms": int(seg.get("emission_wait_timeout_ms", 2000)),
            "time_slice_ms": int(rec.get("time_slice_ms", 50)),
            "mime_type": str(rec.get("mime_type", "audio/webm;codecs=opus")),
            "header_chunks": int(rec.get("header_chunks", 2)),
            "bitrate": str(rec.get("bitrate", "128k")),
            "echo_cancellation": _as_bool(audio.get("echo_cancellation", False)),
            "noise_suppression": _as_bool(audio.get("noise_suppression", False)),
            "auto_gain_control": _as_bool(audio.get("auto_gain_control", False)),
            "device": str(audio.get("device", "default")),
            "sample_rate": int(audio.get("sample_rate", 48000)),
            "channels": int(audio.get("channels", 1)),
            "frame_ms": int(audio.get("frame_ms", 20)),
            "fft_size": int(audio.get("fft_size", 1024)),
            "smoothing_time_constant": float(audio.get("smoothing_time_constant", 0.3)),
            "min_decibels": float(audio.get("min_decibels", -100.0)),
            "max_decibels": float(audio.get("max_decibels", -30.0)),
        }
        values.update(overrides)
        return cls(**values)

    @property
    def frame_bytes(self) -> int:
        """Bytes per mono s16le frame handed to the analyser and encoder."""
        return self.sample_rate * 2 * self.frame_ms // 1000


__all__ = [
    "EMISSION_POLICIES",
    "SessionConfig",
    "active_config_path",
    "get_cfg",
    "reload_cfg",
    "search_paths",
]
