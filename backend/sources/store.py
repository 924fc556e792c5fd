"""
Preferences persistence.

Engines never touch storage keys directly; they go through a
PreferencesStore. Two implementations:

- MemoryPreferencesStore: process-local dict (tests, CLI)
- JsonFilePreferencesStore: one JSON document on disk (API server)
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


def filters_key(rule_id: str) -> str:
    return f'filter_prefs_{rule_id}'


def cookie_key(rule_id: str) -> str:
    return f'cookie_{rule_id}'


def preferences_key(namespace: str) -> str:
    return f'{namespace}_preferences_v1'


class PreferencesStore(ABC):
    """Key/value persistence for cookies, saved filters and engine preferences."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any):
        pass

    @abstractmethod
    def remove(self, key: str):
        pass

    # -------------------- filters --------------------

    def load_filters(self, rule_id: str) -> Dict[str, Any]:
        raw = self.get(filters_key(rule_id))
        return dict(raw) if isinstance(raw, dict) else {}

    def save_filters(self, rule_id: str, filters: Optional[Dict[str, Any]]):
        """Save a filter selection; an empty selection removes the entry."""
        if not filters:
            self.remove(filters_key(rule_id))
        else:
            self.set(filters_key(rule_id), dict(filters))

    # -------------------- cookies --------------------

    def load_cookie(self, rule_id: str) -> Optional[str]:
        raw = self.get(cookie_key(rule_id))
        cookie = str(raw).strip() if raw is not None else ''
        return cookie or None

    def save_cookie(self, rule_id: str, cookie: Optional[str]):
        cookie = (cookie or '').strip()
        if not cookie:
            self.remove(cookie_key(rule_id))
        else:
            self.set(cookie_key(rule_id), cookie)

    # -------------------- engine preferences --------------------

    def load_preferences(self, namespace: str) -> Optional[Dict[str, Any]]:
        raw = self.get(preferences_key(namespace))
        return dict(raw) if isinstance(raw, dict) else None

    def save_preferences(self, namespace: str, preferences: Dict[str, Any]):
        self.set(preferences_key(namespace), dict(preferences))


class MemoryPreferencesStore(PreferencesStore):

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = dict(initial or {})

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any):
        self._data[key] = value

    def remove(self, key: str):
        self._data.pop(key, None)


class JsonFilePreferencesStore(PreferencesStore):
    """
    Preferences kept in a single JSON file.

    The file is read once on construction and rewritten on every change.
    A missing or unreadable file starts an empty store.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._data: Dict[str, Any] = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read preferences from {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring preferences file {self.path}: root is not an object")
            return {}
        return data

    def _write(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + '.tmp')
        tmp.write_text(json.dumps(self._data, indent=2, ensure_ascii=False), encoding='utf-8')
        tmp.replace(self.path)

    def get(self, key: str) -> Optional[Any]:
        return self._data.get(key)

    def set(self, key: str, value: Any):
        self._data[key] = value
        self._write()

    def remove(self, key: str):
        if key in self._data:
            del self._data[key]
            self._write()
