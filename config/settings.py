"""
Configuration loader for the VoicePreview system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class GoogleConfig:
    api_key: str = ""
    project_id: str = ""
    speech_url: str = "https://speech.googleapis.com/v1"
    tts_url: str = "https://texttospeech.googleapis.com/v1"
    generative_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: float = 30.0


@dataclass
class VoiceConfig:
    capture_timeout_ms: int = 8000
    sample_rate: int = 16000
    channels: int = 1
    capture_block_ms: int = 20
    playback_block_ms: int = 20
    amplitude_smoothing: float = 0.3
    visualizer_hz: int = 30
    max_consecutive_service_errors: int = 0     # 0 = never escalate to session end
    input_device: Optional[str] = None
    output_device: Optional[str] = None


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./voice_preview.db"          # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                       # "sql" | "memory" | "file"
    store_file_dir: str = "./data"                      # directory for file backend


@dataclass
class Settings:
    app_name: str = "VoicePreview"
    debug: bool = False
    default_language: str = "ru-RU"
    google: GoogleConfig = field(default_factory=GoogleConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    agents: list[dict[str, Any]] = field(default_factory=list)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "VOICE_PREVIEW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.default_language = raw.get("default_language", settings.default_language)

        if "google" in raw:
            g = raw["google"]
            defaults = GoogleConfig()
            settings.google = GoogleConfig(
                api_key=g.get("api_key", ""),
                project_id=g.get("project_id", ""),
                speech_url=g.get("speech_url", defaults.speech_url),
                tts_url=g.get("tts_url", defaults.tts_url),
                generative_url=g.get("generative_url", defaults.generative_url),
                timeout_seconds=float(g.get("timeout_seconds", defaults.timeout_seconds)),
            )

        if "voice" in raw:
            v = raw["voice"]
            defaults = VoiceConfig()
            settings.voice = VoiceConfig(
                capture_timeout_ms=int(v.get("capture_timeout_ms", defaults.capture_timeout_ms)),
                sample_rate=int(v.get("sample_rate", defaults.sample_rate)),
                channels=int(v.get("channels", defaults.channels)),
                capture_block_ms=int(v.get("capture_block_ms", defaults.capture_block_ms)),
                playback_block_ms=int(v.get("playback_block_ms", defaults.playback_block_ms)),
                amplitude_smoothing=float(v.get("amplitude_smoothing", defaults.amplitude_smoothing)),
                visualizer_hz=int(v.get("visualizer_hz", defaults.visualizer_hz)),
                max_consecutive_service_errors=int(
                    v.get("max_consecutive_service_errors", defaults.max_consecutive_service_errors)
                ),
                input_device=v.get("input_device"),
                output_device=v.get("output_device"),
            )

        if "database" in raw:
            db = raw["database"]
            settings.database = DatabaseConfig(
                url=db.get("url", settings.database.url),
                store_backend=db.get("store_backend", settings.database.store_backend),
                store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            )

        settings.agents = raw.get("agents", [])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
