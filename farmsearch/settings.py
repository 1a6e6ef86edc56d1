import copy
import json
from pathlib import Path
from typing import Any, Dict


DEFAULT_SETTINGS: Dict[str, Any] = {
    "storage": {
        "users_key": "pris.auth.users",
        "session_key": "pris.auth.currentUser",
        "profile_prefix": "pris.userData",
    },
    "auth": {
        "bcrypt_rounds": 12,
        "min_password_length": 8,
        "min_name_length": 3,
    },
    "profile": {
        "history_limit": 50,
        "tips_limit": 50,
        "reminders_limit": 20,
        "default_tip_title": "Saved answer",
    },
    # Seed account, password "harvest123". Stored in the legacy unsalted
    # SHA-256 form; it is rehashed with bcrypt on first successful login.
    "default_users": [
        {
            "id": "user-demo",
            "name": "Demo Farmer",
            "email": "demo@farmsearch.local",
            "passwordHash": "36f09541523ff310cdf9debe07bbbeff404b18a552f9676820a6fe7a302c3135",
        },
    ],
}


class SettingsManager:
    """
    Handles loading and persisting the editable configuration file.

    The file is stored as pretty-printed JSON so operators can edit it by hand.
    Keys missing from the file are backfilled from `DEFAULT_SETTINGS`.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._settings: Dict[str, Any] | None = None
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def settings(self) -> Dict[str, Any]:
        if self._settings is None:
            self._settings = self._load_from_disk()
        return self._settings

    def section(self, name: str) -> Dict[str, Any]:
        return dict(self.settings.get(name) or DEFAULT_SETTINGS[name])

    def _load_from_disk(self) -> Dict[str, Any]:
        if not self.path.exists():
            self._write(DEFAULT_SETTINGS)
            return copy.deepcopy(DEFAULT_SETTINGS)
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        # Merge with defaults to backfill new keys without overwriting manual edits.
        merged = copy.deepcopy(DEFAULT_SETTINGS)
        _deep_update(merged, data)
        return merged

    def _write(self, data: Dict[str, Any]) -> None:
        with self.path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)
            handle.write("\n")


def _deep_update(target: Dict[str, Any], source: Dict[str, Any]) -> None:
    """
    Recursively update a mapping, preserving nested structures.
    """
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _deep_update(target[key], value)
        else:
            target[key] = value
