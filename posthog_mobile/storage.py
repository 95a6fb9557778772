"""
Durable key-value storage for client state.

Every value is a JSON document. With a `path` each key lives in its own file
under that directory, so state survives process restarts; without one the
storage is kept in memory only, which is what tests and short lived scripts want.

Usage:

    from posthog_mobile.storage import Storage, StorageKey

    storage = Storage("/var/lib/myapp/posthog")
    storage.set_dictionary(StorageKey.REGISTERED_PROPERTIES, {"plan": "pro"})
"""

import copy
import json
import logging
import os
import tempfile
import threading
from enum import Enum
from typing import Any, Optional


class StorageKey(str, Enum):
    DISTINCT_ID = "posthog.distinctId"
    ANONYMOUS_ID = "posthog.anonymousId"
    QUEUE = "posthog.queue"
    ENABLED_FEATURE_FLAGS = "posthog.enabledFeatureFlags"
    ENABLED_FEATURE_FLAG_PAYLOADS = "posthog.enabledFeatureFlagPayloads"
    GROUPS = "posthog.groups"
    REGISTERED_PROPERTIES = "posthog.registerProperties"
    OPT_OUT = "posthog.optOut"


_MISSING = object()


class Storage(object):
    """Thread-safe JSON storage, file-backed when a path is given."""

    log = logging.getLogger("posthog_mobile")

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.Lock()
        self._cache: dict[StorageKey, Any] = {}
        if path:
            os.makedirs(path, exist_ok=True)

    def _file_for(self, key: StorageKey) -> str:
        return os.path.join(self.path, "%s.json" % key.value)

    def _read(self, key: StorageKey):
        if not self.path:
            return _MISSING
        try:
            with open(self._file_for(key), "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return _MISSING
        except (OSError, ValueError) as e:
            self.log.warning("Could not read %s from storage: %s", key.value, e)
            return _MISSING

    def _write(self, key: StorageKey, value) -> None:
        if not self.path:
            return
        target = self._file_for(key)
        try:
            fd, tmp = tempfile.mkstemp(dir=self.path, prefix=".%s." % key.value)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f)
            os.replace(tmp, target)
        except (OSError, TypeError, ValueError) as e:
            self.log.error("Could not write %s to storage: %s", key.value, e)

    def _delete(self, key: StorageKey) -> None:
        if not self.path:
            return
        try:
            os.remove(self._file_for(key))
        except FileNotFoundError:
            pass
        except OSError as e:
            self.log.error("Could not delete %s from storage: %s", key.value, e)

    def get(self, key: StorageKey, default=None):
        with self._lock:
            value = self._cache.get(key, _MISSING)
            if value is _MISSING:
                value = self._read(key)
                if value is _MISSING:
                    return default
                self._cache[key] = value
            return copy.deepcopy(value)

    def set(self, key: StorageKey, value) -> None:
        with self._lock:
            value = copy.deepcopy(value)
            self._cache[key] = value
            self._write(key, value)

    def remove(self, key: StorageKey) -> None:
        with self._lock:
            self._cache.pop(key, None)
            self._delete(key)

    def reset(self) -> None:
        for key in StorageKey:
            self.remove(key)

    def get_dictionary(self, key: StorageKey) -> Optional[dict[str, Any]]:
        value = self.get(key)
        return value if isinstance(value, dict) else None

    def set_dictionary(self, key: StorageKey, contents: dict[str, Any]) -> None:
        self.set(key, contents)

    def get_string(self, key: StorageKey) -> Optional[str]:
        value = self.get(key)
        return value if isinstance(value, str) else None

    def set_string(self, key: StorageKey, contents: str) -> None:
        self.set(key, contents)

    def get_bool(self, key: StorageKey) -> Optional[bool]:
        value = self.get(key)
        return value if isinstance(value, bool) else None

    def set_bool(self, key: StorageKey, contents: bool) -> None:
        self.set(key, contents)
