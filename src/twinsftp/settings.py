"""User settings stored as JSON under ``~/.config/twinsftp``."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".config" / "twinsftp"
SETTINGS_FILE = CONFIG_DIR / "settings.json"

DEFAULT_SETTINGS: Dict[str, Any] = {
    "transfers.max_concurrent": 2,
    "transfers.chunk_size": 1024 * 1024,
    "ui.ticks_per_second": 30,
    "ui.show_hidden": False,
    "local.start_path": ".",
    "remote.start_path": "~",
    "logging.file": "~/.cache/twinsftp/twinsftp.log",
    "logging.level": "INFO",
}


class SettingsManager:
    """Dotted-key settings backed by a JSON file.

    Keys missing from the file fall back to :data:`DEFAULT_SETTINGS`;
    keys the program does not know are ignored. A file that cannot be parsed
    is moved aside to ``<name>.bak`` and the defaults are used.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None, *, autoload: bool = True) -> None:
        self.path = Path(path).expanduser() if path else SETTINGS_FILE
        self.settings: Dict[str, Any] = dict(DEFAULT_SETTINGS)
        if autoload:
            self.load()

    def load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                loaded_settings = json.load(f)
            if not isinstance(loaded_settings, dict):
                raise ValueError("settings file must contain a JSON object")
        except (json.JSONDecodeError, ValueError, OSError) as e:
            logger.error(f"Failed to load settings from {self.path}: {e}. Using defaults.")
            self._back_up()
            return
        for key in self.settings:
            if key in loaded_settings:
                self.settings[key] = loaded_settings[key]

    def _back_up(self) -> None:
        backup = self.path.with_name(self.path.name + ".bak")
        try:
            self.path.replace(backup)
        except OSError as e:
            logger.warning(f"Could not move broken settings to {backup}: {e}")

    def save(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(self.settings, f, indent=4)
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")

    def get(self, key: str) -> Any:
        return self.settings.get(key, DEFAULT_SETTINGS.get(key))

    def get_int(self, key: str, minimum: int = 1) -> int:
        """Integer setting, falling back to the default when malformed."""
        value = self.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            logger.warning(f"Setting {key}={value!r} is not a number, using default")
            value = DEFAULT_SETTINGS[key]
        return max(int(value), minimum)

    def get_bool(self, key: str) -> bool:
        return bool(self.get(key))

    def set(self, key: str, value: Any) -> None:
        self.settings[key] = value
