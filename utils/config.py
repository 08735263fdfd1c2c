# Copyright (C) 2026 grodz
#
# This file is part of Aquabot.
#
# Aquabot is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Configuration management for Aquabot."""

import asyncio
import os
import tempfile
from pathlib import Path
from typing import Any, Callable

import yaml
from loguru import logger


# =============================================================================
# DEFAULT SETTINGS SCHEMA
# =============================================================================
# These defaults are used when settings.yaml is missing or incomplete.
# Environment variables can override any setting (see _apply_env_overrides).
#
# Database Settings (database.*):
#   path                   - Directory holding <collection>.json files (None = <bot root>/data/db)
#   watch_files            - Poll collection files and reload on external edits
#   watch_interval         - Seconds between file checks (0.01-60)
#   flush_delay_ms         - Milliseconds to wait after the last change before writing (1-10000)
#
# Logging Settings (logging.*):
#   level                  - Log verbosity: "minimal", "verbose", or "debug"
# =============================================================================

DEFAULT_SETTINGS = {
    "database": {
        "path": None,
        "watch_files": True,
        "watch_interval": 0.1,
        "flush_delay_ms": 50,
    },
    # Logging (LOG_LEVEL env var overrides this)
    "logging": {
        "level": "verbose",  # minimal, verbose, debug
    },
}

LOG_LEVELS = ("minimal", "verbose", "debug")

_BOT_ROOT = Path(__file__).resolve().parent.parent


def deep_merge(user: dict, defaults: dict) -> dict:
    """Overlay user settings on a copy of the defaults, section by section.

    Keys missing from defaults are dropped with a warning, so a typo in
    settings.yaml never reaches the store.
    """
    result = {
        key: value.copy() if isinstance(value, dict) else value
        for key, value in defaults.items()
    }
    for key, value in user.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(value, result[key])
        elif key in defaults:
            result[key] = value
        else:
            logger.warning(f"unknown config key: {key}")
    return result


def load_yaml(path: Path, defaults: dict) -> dict:
    """Read a settings file merged over defaults. Never raises on bad YAML."""
    if not path.exists():
        return deep_merge({}, defaults)

    try:
        with open(path, 'r', encoding='utf-8') as f:
            user = yaml.safe_load(f) or {}

        if not isinstance(user, dict):
            logger.warning(f"{path.name} invalid, using defaults")
            return deep_merge({}, defaults)

        return deep_merge(user, defaults)

    except yaml.YAMLError:
        logger.opt(exception=True).error(f"failed to parse {path.name}")
        return deep_merge({}, defaults)


def save_yaml(path: Path, data: dict, header: str = "") -> None:
    """Write YAML through a temp file in the same directory, then rename it into place."""
    temp_path = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(dir=path.parent, suffix='.tmp')
        try:
            f = os.fdopen(temp_fd, 'w', encoding='utf-8')
        except Exception:
            os.close(temp_fd)
            raise
        with f:
            if header:
                f.write(header)
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        Path(temp_path).replace(path)
    except Exception:
        if temp_path:
            Path(temp_path).unlink(missing_ok=True)
        raise


class ConfigManager:
    """Manages bot configuration from settings.yaml.

    Sources, lowest to highest priority:
    1. DEFAULT_SETTINGS (built-in defaults)
    2. settings.yaml (user customization)
    3. DB_* and LOG_LEVEL environment variables

    Access patterns:
        config_manager.get("database")["flush_delay_ms"]
        config_manager.database_options()   # Keyword arguments for Store()

    Out-of-range numbers are clamped and invalid values fall back to their
    defaults, each with a warning.

    Attributes:
        config_path: Directory containing settings.yaml
        settings: Validated settings dict
    """

    def __init__(self, config_path: Path) -> None:
        self.config_path = Path(config_path)
        self.settings: dict = deep_merge({}, DEFAULT_SETTINGS)

    async def load(self) -> None:
        """Load settings from YAML, apply env overrides, validate.

        Generates settings.yaml with default values if it is missing.
        """
        settings_path = self.config_path / "settings.yaml"
        self.settings = await asyncio.to_thread(
            load_yaml, settings_path, DEFAULT_SETTINGS
        )

        if not settings_path.exists():
            header = "# Aquabot Settings\n# Edit these values to customize behavior\n\n"
            try:
                await asyncio.to_thread(save_yaml, settings_path, DEFAULT_SETTINGS, header)
                logger.debug(f"generated {settings_path.name}")
            except OSError:
                logger.opt(exception=True).warning(f"could not write {settings_path.name}")

        self._apply_env_overrides()
        self._validate_settings()

        logger.debug("config loaded")

    def _validate_settings(self) -> None:
        """Repair the merged settings in place.

        A bare "key:" in YAML loads as None and gets its default back. A
        non-dict section is replaced wholesale. watch_files must be a real
        bool, and the two timing values are clamped to their ranges.
        """
        for section in ("database", "logging"):
            sect = self.settings.get(section)
            defaults = DEFAULT_SETTINGS[section]
            if not isinstance(sect, dict):
                logger.warning(f"{section} section invalid, using defaults")
                self.settings[section] = defaults.copy()
                continue
            for key in list(sect):
                if sect[key] is None and key in defaults:
                    sect[key] = defaults[key]

        database = self.settings["database"]

        if not isinstance(database.get("watch_files"), bool):
            logger.warning(f"database.watch_files={database.get('watch_files')!r} invalid, using default")
            database["watch_files"] = DEFAULT_SETTINGS["database"]["watch_files"]

        validations = {
            "watch_interval": (float, 0.01, 60.0),
            "flush_delay_ms": (int, 1, 10000),
        }
        for key, (kind, min_val, max_val) in validations.items():
            value = database.get(key)
            try:
                v = kind(value)
                clamped = max(min_val, min(max_val, v))
                if clamped != v:
                    logger.warning(f"database.{key}={v} out of range, clamped to {clamped} (valid: {min_val}-{max_val})")
                database[key] = clamped
            except (ValueError, TypeError):
                logger.warning(f"database.{key}={value!r} invalid, using default")
                database[key] = DEFAULT_SETTINGS["database"][key]

        level = str(self.settings["logging"].get("level", "")).lower()
        if level not in LOG_LEVELS:
            logger.warning(f"logging.level={level!r} invalid, using default")
            level = DEFAULT_SETTINGS["logging"]["level"]
        self.settings["logging"]["level"] = level

    def _apply_env_overrides(self) -> None:
        """Apply DB_* and LOG_LEVEL environment variables on top of settings.yaml.

        env_map maps each variable to a "section.key" target and a converter.
        A value the converter rejects is logged and the setting is left as is.
        """
        def non_negative(env_key: str, kind: Callable[[str], Any]) -> Callable[[str], Any]:
            def validate(x: str) -> Any:
                v = kind(x)
                if v < 0:
                    logger.warning(f"{env_key}={v} out of range, clamped to 0 (valid: 0+)")
                    return kind(0)
                return v
            return validate

        env_map = {
            "DB_PATH": ("database.path", str),
            "DB_WATCH_FILES": ("database.watch_files", lambda x: x.lower() == "true"),
            "DB_WATCH_INTERVAL": ("database.watch_interval", non_negative("DB_WATCH_INTERVAL", float)),
            "DB_FLUSH_DELAY_MS": ("database.flush_delay_ms", non_negative("DB_FLUSH_DELAY_MS", int)),
            "LOG_LEVEL": ("logging.level", str),
        }

        for env_key, (setting_key, converter) in env_map.items():
            if value := os.getenv(env_key):
                try:
                    converted = converter(value)
                    section, key = setting_key.split(".")
                    target = self.settings.setdefault(section, {})
                    if not isinstance(target, dict):
                        # Corrupted YAML: expected dict but got scalar
                        logger.warning(f"invalid config structure for {setting_key}")
                        continue
                    target[key] = converted
                    logger.debug(f"{env_key} overrides {setting_key}")
                except (ValueError, TypeError) as e:
                    logger.warning(f"invalid env var {env_key}: {e}")

    def get(self, key: str, default=None) -> Any:
        """Get a top-level setting value (e.g., "database", "logging")."""
        return self.settings.get(key, default)

    def database_path(self) -> Path:
        """Resolved directory for collection files."""
        configured = self.get("database", {}).get("path")
        if configured:
            return Path(configured).expanduser()
        return _BOT_ROOT / "data" / "db"

    def database_options(self) -> dict:
        """Keyword arguments for constructing the Store."""
        database = self.get("database", {})
        return {
            "path": self.database_path(),
            "watch_files": database["watch_files"],
            "watch_interval": database["watch_interval"],
            "flush_delay": database["flush_delay_ms"] / 1000,
        }
