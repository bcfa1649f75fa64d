"""YAML configuration loading and typed voice settings."""

import copy
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import yaml

logger = logging.getLogger("quizvoice.config")


DEFAULT_CONFIG: dict = {
    'recognition': {
        'language': 'en-US',
        'interim_results': True,
        'continuous': False,
        'max_results': 1,
        'speech_timeout_ms': 30000,
    },
    'session': {
        'stop_grace_ms': 300,
        'stop_timeout_ms': 3000,
        'recovery_delay_ms': 1000,
        'auto_recover': True,
    },
    'diagnostics': {
        'max_entries': 50,
    },
    'engine': {
        'type': 'scripted',
        'script': [],
    },
    'logging': {
        'level': 'INFO',
        'structured': False,
        'run_retention': 5,
        'trace_events': False,
        'log_file': 'quizvoice.log',
    },
}


def get_default_config() -> dict:
    """Return a fresh copy of the default configuration"""
    return copy.deepcopy(DEFAULT_CONFIG)


def load_config(config_path: Union[str, Path, None] = None) -> dict:
    """Load configuration from YAML file, falling back to defaults"""
    if config_path is None:
        return get_default_config()

    config_file = Path(config_path)
    if not config_file.exists():
        logger.info("Config file %s not found, using defaults", config_file)
        return get_default_config()

    with open(config_file, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    # Return default if file is empty or invalid
    if not isinstance(config, dict) or not config:
        logger.warning("Config file %s is empty or not a mapping, using defaults", config_file)
        return get_default_config()

    ensure_config_defaults(config)
    return config


def ensure_config_defaults(config: dict) -> dict:
    """Fill in missing sections/keys without overwriting user values."""
    for section, defaults in DEFAULT_CONFIG.items():
        current = config.get(section)
        if not isinstance(current, dict):
            current = {}
            config[section] = current
        for key, value in defaults.items():
            current.setdefault(key, copy.deepcopy(value))
    return config


@dataclass(frozen=True)
class VoiceSettings:
    """Timing and recognizer options consumed by the voice session manager."""

    language: str = 'en-US'
    interim_results: bool = True
    continuous: bool = False
    max_results: int = 1
    speech_timeout_ms: int = 30000
    stop_grace_ms: int = 300
    stop_timeout_ms: int = 3000
    recovery_delay_ms: int = 1000
    auto_recover: bool = True
    diagnostics_max_entries: int = 50

    @property
    def stop_grace_s(self) -> float:
        return self.stop_grace_ms / 1000.0

    @property
    def stop_timeout_s(self) -> float:
        return self.stop_timeout_ms / 1000.0

    @property
    def recovery_delay_s(self) -> float:
        return self.recovery_delay_ms / 1000.0

    @classmethod
    def from_config(cls, config: Optional[dict]) -> "VoiceSettings":
        """Build settings from a (possibly partial) config dict."""
        config = config or {}
        recognition = config.get('recognition', {}) or {}
        session = config.get('session', {}) or {}
        diagnostics = config.get('diagnostics', {}) or {}
        defaults = cls()

        return cls(
            language=str(recognition.get('language', defaults.language)),
            interim_results=bool(recognition.get('interim_results', defaults.interim_results)),
            continuous=bool(recognition.get('continuous', defaults.continuous)),
            max_results=_as_int(recognition, 'max_results', defaults.max_results),
            speech_timeout_ms=_as_int(recognition, 'speech_timeout_ms', defaults.speech_timeout_ms),
            stop_grace_ms=_as_int(session, 'stop_grace_ms', defaults.stop_grace_ms),
            stop_timeout_ms=_as_int(session, 'stop_timeout_ms', defaults.stop_timeout_ms),
            recovery_delay_ms=_as_int(session, 'recovery_delay_ms', defaults.recovery_delay_ms),
            auto_recover=bool(session.get('auto_recover', defaults.auto_recover)),
            diagnostics_max_entries=_as_int(diagnostics, 'max_entries', defaults.diagnostics_max_entries),
        )


def _as_int(section: dict, key: str, default: int) -> int:
    raw_value: Any = section.get(key, default)
    try:
        value = int(raw_value)
    except (TypeError, ValueError):
        logger.warning("Invalid value for %s: %r (using %s)", key, raw_value, default)
        return default
    if value < 0:
        logger.warning("Negative value for %s: %r (using %s)", key, raw_value, default)
        return default
    return value
