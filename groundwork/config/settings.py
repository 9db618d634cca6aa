"""
Engine settings: DEFAULT_SETTINGS overlaid with the user's settings.json.
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .defaults import DEFAULT_SETTINGS

logger = logging.getLogger(__name__)

# Settings that must be positive numbers; bad values fall back to the default
POSITIVE_NUMBERS = ("parallelism", "operation_timeout")


class Settings:
    """
    Read-mostly view of engine settings.

    settings.json lives in $GROUNDWORK_CONFIG_DIR when that is set,
    otherwise in $XDG_CONFIG_HOME/groundwork (~/.config/groundwork), or
    %APPDATA%\\groundwork on Windows. Nested keys are addressed with dots:
    settings.get("retry.delete.attempts").
    """

    def __init__(self, config_dir: Optional[str] = None):
        self.config_dir = Path(config_dir) if config_dir else self._default_config_dir()
        self.config_file = self.config_dir / "settings.json"
        self._settings: Dict[str, Any] = {}
        self.load()

    @staticmethod
    def _default_config_dir() -> Path:
        override = os.environ.get("GROUNDWORK_CONFIG_DIR")
        if override:
            return Path(override)
        if os.name == 'nt':
            base = os.environ.get('APPDATA', os.path.expanduser('~'))
        else:
            base = os.environ.get('XDG_CONFIG_HOME', os.path.expanduser('~/.config'))
        return Path(base) / 'groundwork'

    def load(self):
        """(Re)read settings.json; a missing or unreadable file means defaults."""
        self._settings = copy.deepcopy(DEFAULT_SETTINGS)

        if not self.config_file.exists():
            logger.debug(f"No {self.config_file}, using default settings")
            return

        try:
            with open(self.config_file, 'r', encoding='utf-8') as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.error(f"Ignoring unreadable settings file {self.config_file}: {e}")
            return

        if not isinstance(overrides, dict):
            logger.error(f"Ignoring {self.config_file}: expected a JSON object")
            return

        _merge(self._settings, overrides)
        self._check_numbers()
        logger.debug(f"Loaded settings from {self.config_file}")

    def _check_numbers(self):
        for key in POSITIVE_NUMBERS:
            value = self._settings.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                logger.warning(f"Setting {key}={value!r} is not a positive number, using {DEFAULT_SETTINGS[key]}")
                self._settings[key] = DEFAULT_SETTINGS[key]

    def get(self, key: str, default: Any = None) -> Any:
        """Value at a dotted key, or default if any step is missing."""
        value: Any = self._settings
        for part in key.split('.'):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value

    def set(self, key: str, value: Any):
        """Set a dotted key for this process, creating intermediate maps."""
        *parents, last = key.split('.')
        target = self._settings
        for part in parents:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        target[last] = value

    def retry_settings(self, operation: str) -> Dict[str, Any]:
        """
        Retry parameters for one provider operation (create, read, update,
        delete): retry.<operation> laid over retry.default.
        """
        merged = dict(self.get("retry.default", {}))
        merged.update(self.get(f"retry.{operation}", {}) or {})
        return merged


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]):
    """Recursively merge overrides into base in place."""
    for key, value in overrides.items():
        if isinstance(base.get(key), dict) and isinstance(value, dict):
            _merge(base[key], value)
        else:
            base[key] = value
