from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .errors import InvalidArgument, NotFound, PersistenceFailure
from .local_storage import LEGACY_KEYS, LocalStorage, StorageKey
from .models import normalize_device_fields, normalize_user_fields

_LOGGER = logging.getLogger("gsm_relay.storage")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_settings() -> dict[str, Any]:
    return {"adminNumber": "", "activeDeviceId": None, "completedSteps": []}


def default_data() -> dict[str, Any]:
    return {"devices": [], "users": [], "logs": {}, "settings": default_settings()}


class Storage:
    """In-memory snapshot of devices, users, logs and settings.

    The snapshot is loaded once from ``backend`` and every mutation writes the
    whole snapshot back under the aggregate key before returning. Records are
    plain dicts; callers always receive copies.
    """

    def __init__(self, backend: LocalStorage, *, clock: Callable[[], datetime] = _utcnow):
        self._backend = backend
        self._clock = clock
        self._data = self._load()

    # -- loading / saving -------------------------------------------------

    @staticmethod
    def _normalize(raw: Any) -> dict[str, Any]:
        if not isinstance(raw, dict):
            return default_data()
        data = dict(raw)
        # Records that are not objects cannot be looked up; drop them.
        for key in ("devices", "users"):
            items = data.get(key)
            data[key] = [r for r in items if isinstance(r, dict)] if isinstance(items, list) else []
        logs = data.get("logs")
        if not isinstance(logs, dict):
            logs = {}
        data["logs"] = {
            str(k): [e for e in v if isinstance(e, dict)] for k, v in logs.items() if isinstance(v, list)
        }
        settings = data.get("settings")
        if not isinstance(settings, dict):
            settings = default_settings()
        settings = {**default_settings(), **settings}
        if not isinstance(settings.get("completedSteps"), list):
            settings["completedSteps"] = []
        data["settings"] = settings
        return data

    def _load(self) -> dict[str, Any]:
        raw = self._backend.get_item(StorageKey.APP_DATA)
        if raw is not None:
            return self._normalize(raw)

        legacy = {k: self._backend.get_item(k) for k in LEGACY_KEYS}
        if all(v is None for v in legacy.values()):
            return default_data()

        _LOGGER.info("Migrating discrete storage keys into %s", StorageKey.APP_DATA.value)
        data = self._normalize({k.value: v for k, v in legacy.items() if v is not None})
        self._backend.set_item(StorageKey.APP_DATA, data)
        for k in LEGACY_KEYS:
            self._backend.remove_item(k)
        return data

    def _save(self) -> None:
        try:
            self._backend.set_item(StorageKey.APP_DATA, self._data)
        except PersistenceFailure:
            _LOGGER.error("Failed to save to storage")
            raise

    def _now(self) -> str:
        return self._clock().isoformat()

    def _later_than(self, previous: Any) -> str:
        now = self._clock()
        try:
            prev = datetime.fromisoformat(str(previous))
        except ValueError:
            return now.isoformat()
        if prev.tzinfo is None:
            prev = prev.replace(tzinfo=timezone.utc)
        if now <= prev:
            now = prev + timedelta(microseconds=1)
        return now.isoformat()

    @staticmethod
    def _generate_id(taken: set[str]) -> str:
        while True:
            new_id = uuid.uuid4().hex
            if new_id not in taken:
                return new_id

    # -- snapshot ---------------------------------------------------------

    def get_data(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def replace_data(self, data: dict[str, Any]) -> None:
        self._data = self._normalize(copy.deepcopy(data))
        self._save()

    # -- devices ----------------------------------------------------------

    def get_devices(self) -> list[dict[str, Any]]:
        return copy.deepcopy(self._data["devices"])

    def _device_index(self, device_id: Any) -> int:
        did = str(device_id)
        for idx, d in enumerate(self._data["devices"]):
            if str(d.get("id")) == did:
                return idx
        return -1

    def get_device_by_id(self, device_id: Any) -> dict[str, Any] | None:
        idx = self._device_index(device_id)
        if idx == -1:
            return None
        return copy.deepcopy(self._data["devices"][idx])

    def add_device(self, fields: dict[str, Any]) -> dict[str, Any]:
        cleaned = normalize_device_fields(fields, partial=False)
        now = self._now()
        device = {
            **cleaned,
            "id": self._generate_id({str(d.get("id")) for d in self._data["devices"]}),
            "createdAt": now,
            "updatedAt": now,
        }
        self._data["devices"].append(device)
        self._save()
        return copy.deepcopy(device)

    def update_device(self, device_id: Any, updates: dict[str, Any]) -> dict[str, Any] | None:
        idx = self._device_index(device_id)
        if idx == -1:
            return None
        cleaned = normalize_device_fields(updates or {}, partial=True)
        current = self._data["devices"][idx]
        updated = {**current, **cleaned, "updatedAt": self._later_than(current.get("updatedAt"))}
        self._data["devices"][idx] = updated
        self._save()
        return copy.deepcopy(updated)

    def delete_device(self, device_id: Any) -> bool:
        idx = self._device_index(device_id)
        if idx == -1:
            return False
        did = str(self._data["devices"][idx].get("id"))
        del self._data["devices"][idx]
        self._data["users"] = [u for u in self._data["users"] if str(u.get("deviceId")) != did]
        self._data["logs"].pop(did, None)
        if self._data["settings"].get("activeDeviceId") == did:
            self._data["settings"]["activeDeviceId"] = None
        self._save()
        return True

    def set_active_device(self, device_id: Any | None) -> bool:
        self._data["settings"]["activeDeviceId"] = str(device_id) if device_id is not None else None
        self._save()
        return True

    # -- settings ---------------------------------------------------------

    def get_global_settings(self) -> dict[str, Any]:
        return copy.deepcopy(self._data["settings"])

    def update_global_settings(self, updates: dict[str, Any]) -> dict[str, Any]:
        if not isinstance(updates, dict):
            raise InvalidArgument("settings must be an object")
        settings = self._data["settings"]
        if "adminNumber" in updates:
            settings["adminNumber"] = str(updates.get("adminNumber") or "").strip()
        if "completedSteps" in updates:
            steps = updates.get("completedSteps")
            if not isinstance(steps, list):
                raise InvalidArgument("completedSteps must be a list")
            settings["completedSteps"] = [str(s) for s in steps]
        self._save()
        return copy.deepcopy(settings)

    def complete_step(self, step: str) -> list[str]:
        s = str(step or "").strip()
        if not s:
            raise InvalidArgument("step is required")
        steps = self._data["settings"]["completedSteps"]
        if s not in steps:
            steps.append(s)
            self._save()
        return list(steps)

    # -- users ------------------------------------------------------------

    def get_users(self, device_id: Any | None = None) -> list[dict[str, Any]]:
        users = self._data["users"]
        if device_id is not None:
            users = [u for u in users if str(u.get("deviceId")) == str(device_id)]
        return copy.deepcopy(users)

    def get_user_by_id(self, user_id: Any) -> dict[str, Any] | None:
        for u in self._data["users"]:
            if str(u.get("id")) == str(user_id):
                return copy.deepcopy(u)
        return None

    def add_user(self, fields: dict[str, Any]) -> dict[str, Any]:
        device_id = (fields or {}).get("deviceId")
        if device_id is None or self._device_index(device_id) == -1:
            raise NotFound(f"device {device_id!r} not found")
        cleaned = normalize_user_fields(fields, partial=False)
        user = {
            "startTime": None,
            "endTime": None,
            **cleaned,
            "id": self._generate_id({str(u.get("id")) for u in self._data["users"]}),
            "deviceId": str(device_id),
        }
        self._data["users"].append(user)
        self._save()
        return copy.deepcopy(user)

    def update_user(self, user_id: Any, updates: dict[str, Any]) -> dict[str, Any] | None:
        for idx, u in enumerate(self._data["users"]):
            if str(u.get("id")) != str(user_id):
                continue
            cleaned = normalize_user_fields(updates or {}, partial=True)
            updated = {**u, **cleaned}
            self._data["users"][idx] = updated
            self._save()
            return copy.deepcopy(updated)
        return None

    def delete_user(self, user_id: Any) -> bool:
        before = len(self._data["users"])
        kept = [u for u in self._data["users"] if str(u.get("id")) != str(user_id)]
        if len(kept) == before:
            return False
        self._data["users"] = kept
        self._save()
        return True

    # -- logs -------------------------------------------------------------

    def get_device_logs(self, device_id: Any) -> list[dict[str, Any]]:
        return copy.deepcopy(self._data["logs"].get(str(device_id), []))

    def add_device_log(
        self,
        device_id: Any,
        action: str,
        details: str,
        success: bool,
        category: str,
    ) -> dict[str, Any]:
        did = str(device_id)
        logs = self._data["logs"].setdefault(did, [])
        entry = {
            "id": self._generate_id({str(x.get("id")) for x in logs}),
            "deviceId": did,
            "timestamp": self._now(),
            "action": str(action),
            "details": str(details),
            "success": bool(success),
            "category": str(category),
        }
        logs.append(entry)
        self._save()
        return copy.deepcopy(entry)
