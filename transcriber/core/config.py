"""
Application configuration manager.
Stores settings in a JSON file under the app support directory.
"""

import json
import logging
from pathlib import Path

from transcriber.core.constants import (
    CONFIG_PATH, DEFAULT_SCRATCH_DIR, ProcessingMode, ProviderName,
    MAX_UPLOAD_MB, MAX_DURATION_SEC, MAX_JOB_AGE_SEC, SWEEP_INTERVAL_SEC,
    MAX_TOTAL_RETRIES, MAX_SPLITS,
)

# Validation bounds
_UPLOAD_MB_MIN = 1
_UPLOAD_MB_MAX = 2048
_DURATION_MIN = 60            # 1 minute
_DURATION_MAX = 12 * 3600     # 12 hours
_JOB_AGE_MIN = 60
_JOB_AGE_MAX = 7 * 24 * 3600
_SWEEP_MIN = 1
_SWEEP_MAX = 3600
_RETRIES_MAX = 200
_SPLITS_MAX = 20

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'default_mode': ProcessingMode.BALANCED,
    'default_provider': ProviderName.OPENAI,
    'max_upload_mb': MAX_UPLOAD_MB,
    'max_duration_sec': MAX_DURATION_SEC,
    'max_job_age_sec': MAX_JOB_AGE_SEC,
    'sweep_interval_sec': SWEEP_INTERVAL_SEC,
    'max_total_retries': MAX_TOTAL_RETRIES,
    'max_splits': MAX_SPLITS,
    'scratch_dir': str(DEFAULT_SCRATCH_DIR),
    'keep_debug_artifacts': False,
    'allow_anonymous_cancel': True,
}

# key -> (type, lower, upper)
_NUMERIC_BOUNDS = {
    'max_upload_mb': (int, _UPLOAD_MB_MIN, _UPLOAD_MB_MAX),
    'max_duration_sec': (int, _DURATION_MIN, _DURATION_MAX),
    'max_job_age_sec': (int, _JOB_AGE_MIN, _JOB_AGE_MAX),
    'sweep_interval_sec': (float, _SWEEP_MIN, _SWEEP_MAX),
    'max_total_retries': (int, 0, _RETRIES_MAX),
    'max_splits': (int, 0, _SPLITS_MAX),
}


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None, overrides: dict | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self.load()
        for key, value in (overrides or {}).items():
            self._data[key] = self._validate(key, value)

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
                for key, value in saved.items():
                    self._data[key] = self._validate(key, value)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Failed to load config: %s", e)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        self._data[key] = value
        self.save()

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key in _NUMERIC_BOUNDS:
            kind, lower, upper = _NUMERIC_BOUNDS[key]
            try:
                value = kind(value)
            except (TypeError, ValueError):
                logger.warning("Invalid %s %r, using default", key, value)
                return _DEFAULTS[key]
            return max(lower, min(upper, value))

        if key == 'default_mode':
            if value not in (ProcessingMode.BALANCED, ProcessingMode.BEST_QUALITY):
                logger.warning("Invalid default_mode %r, using %s", value, ProcessingMode.BALANCED)
                return ProcessingMode.BALANCED

        if key == 'default_provider':
            if value not in (ProviderName.OPENAI, ProviderName.DEEPGRAM):
                logger.warning("Invalid default_provider %r, using %s", value, ProviderName.OPENAI)
                return ProviderName.OPENAI

        if key in ('keep_debug_artifacts', 'allow_anonymous_cancel'):
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def scratch_dir(self) -> Path:
        return Path(self._data.get('scratch_dir', str(DEFAULT_SCRATCH_DIR)))

    @property
    def max_upload_bytes(self) -> int:
        return int(self._data['max_upload_mb']) * 1024 * 1024

    @property
    def max_duration_sec(self) -> int:
        return self._data['max_duration_sec']

    @property
    def max_job_age_sec(self) -> int:
        return self._data['max_job_age_sec']

    @property
    def sweep_interval_sec(self) -> float:
        return self._data['sweep_interval_sec']

    @property
    def keep_debug_artifacts(self) -> bool:
        return self._data.get('keep_debug_artifacts', False)

    @keep_debug_artifacts.setter
    def keep_debug_artifacts(self, value: bool):
        self._data['keep_debug_artifacts'] = bool(value)
        self.save()
