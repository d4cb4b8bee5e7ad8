from __future__ import annotations

import json
import logging
import os
import time
from enum import Enum
from typing import Any

from .errors import InvalidArgument, PersistenceFailure

_LOGGER = logging.getLogger("gsm_relay.storage")


class StorageKey(str, Enum):
    APP_DATA = "app_data"
    # Discrete keys of the old layout, read only for migration.
    DEVICES = "devices"
    USERS = "users"
    LOGS = "logs"
    SETTINGS = "settings"


LEGACY_KEYS = (StorageKey.DEVICES, StorageKey.USERS, StorageKey.LOGS, StorageKey.SETTINGS)


def _as_key(key: StorageKey | str) -> StorageKey:
    try:
        return StorageKey(key)
    except ValueError:
        raise InvalidArgument(f"unknown storage key: {key!r}") from None


class LocalStorage:
    """Durable key-value store: one JSON file per key inside ``directory``."""

    def __init__(self, directory: str):
        self._dir = directory

    @property
    def directory(self) -> str:
        return self._dir

    def _path(self, key: StorageKey) -> str:
        return os.path.join(self._dir, f"{key.value}.json")

    def get_item(self, key: StorageKey | str) -> Any | None:
        path = self._path(_as_key(key))
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as e:
            _LOGGER.warning("Unreadable value in %s (%s); treating as missing", path, e)
            # Keep the broken file around for inspection.
            try:
                ts = time.strftime("%Y%m%d-%H%M%S")
                os.replace(path, f"{path}.corrupt.{ts}")
            except OSError:
                _LOGGER.debug("Could not move %s aside", path)
            return None
        except OSError as e:
            _LOGGER.warning("Error reading %s: %s", path, e)
            return None

    def set_item(self, key: StorageKey | str, value: Any) -> None:
        path = self._path(_as_key(key))
        try:
            data = json.dumps(value, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as e:
            _LOGGER.error("Error serializing item %s: %s", path, e)
            raise PersistenceFailure(f"value for {key!s} is not JSON serializable: {e}") from e
        tmp = path + ".tmp"
        try:
            os.makedirs(self._dir, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(data)
            os.replace(tmp, path)
        except OSError as e:
            _LOGGER.error("Error setting item %s: %s", path, e)
            try:
                os.remove(tmp)
            except OSError:
                pass
            raise PersistenceFailure(f"could not write {path}: {e}") from e

    def remove_item(self, key: StorageKey | str) -> None:
        path = self._path(_as_key(key))
        try:
            os.remove(path)
        except FileNotFoundError:
            return
        except OSError as e:
            _LOGGER.error("Error removing item %s: %s", path, e)
            raise PersistenceFailure(f"could not remove {path}: {e}") from e

    def clear(self) -> None:
        for key in StorageKey:
            self.remove_item(key)
