"""
Per-user preference store for the Evernote portfolio plugin.
Persists OAuth state across the authorization redirect.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class PreferenceStore:
    """Key/value preferences scoped by user, persisted to a JSON file.

    Stores the OAuth round-trip state that must survive the redirect to
    Evernote and back:
    - the pending request-token secret
    - the access token and note store URL after a successful exchange

    The file layout is ``{"version": 1, "users": {user_id: {key: value}}}``.
    """

    def __init__(self, store_file: Optional[Path] = None):
        self.store_file = Path(store_file) if store_file else self._get_store_path()
        self._lock = threading.Lock()
        self._data = self._load()

    def _get_store_path(self) -> Path:
        """Default location beside the module (same place as settings.json)."""
        script_dir = Path(__file__).parent
        return script_dir / 'user_preferences.json'

    def _empty(self) -> Dict[str, Any]:
        return {'version': 1, 'users': {}}

    def _load(self) -> Dict[str, Any]:
        """Load preferences from file."""
        if not self.store_file.exists():
            return self._empty()

        try:
            with open(self.store_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
            if not isinstance(data.get('users'), dict):
                logger.warning(f"Preference file has no users table, starting fresh: {self.store_file}")
                return self._empty()
            logger.info(f"Loaded user preferences from: {self.store_file}")
            return data
        except Exception as e:
            logger.warning(f"Could not load preferences: {e}")
            return self._empty()

    def _save(self):
        """Save preferences to file. Caller holds the lock."""
        self.store_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.store_file, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, indent=2)
        logger.debug("Preferences saved")

    def get(self, user_id: str, key: str, default: Any = None) -> Any:
        """Get a preference; empty strings count as unset."""
        value = self._data['users'].get(str(user_id), {}).get(key)
        if value is None or value == '':
            return default
        return value

    def set(self, user_id: str, key: str, value: Any):
        """Set a preference for the user. Setting ``''`` or None clears it."""
        with self._lock:
            prefs = self._data['users'].setdefault(str(user_id), {})
            if value is None or value == '':
                prefs.pop(key, None)
            else:
                prefs[key] = value
            self._save()

    def unset(self, user_id: str, key: str):
        """Remove a preference for the user."""
        self.set(user_id, key, None)

    def get_all(self, user_id: str) -> Dict[str, Any]:
        """All preferences for a user (copy)."""
        return dict(self._data['users'].get(str(user_id), {}))

    def clear_user(self, user_id: str, prefix: str = ''):
        """Remove a user's preferences, or only those whose key starts with prefix."""
        with self._lock:
            prefs = self._data['users'].get(str(user_id))
            if not prefs:
                return
            for key in [k for k in prefs if k.startswith(prefix)]:
                del prefs[key]
            if not prefs:
                del self._data['users'][str(user_id)]
            logger.info("Cleared preferences for user")
            self._save()
