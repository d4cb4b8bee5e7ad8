from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Callable

from .errors import BackupFailed, InvalidBackupFormat
from .store import Storage

_LOGGER = logging.getLogger("gsm_relay.backup")

BACKUP_VERSION = "1.0"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def backup_filename(now: datetime) -> str:
    return f"gsm-backup-{now.strftime('%Y-%m-%d')}.json"


def clean_backup_text(text: str) -> str:
    # Tolerate a BOM and stray text pasted around the JSON object.
    t = (text or "").strip()
    if t.startswith("\ufeff"):
        t = t.lstrip("\ufeff").strip()
    if not t:
        return ""
    if not t.startswith("{"):
        a = t.find("{")
        b = t.rfind("}")
        if a != -1 and b != -1 and b > a:
            t = t[a : b + 1].strip()
    return t


def _records(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(r, dict) for r in value)


def is_valid_backup(backup: Any) -> bool:
    if not isinstance(backup, dict):
        return False
    settings = backup.get("settings")
    logs = backup.get("logs")
    return (
        isinstance(backup.get("version"), str)
        and isinstance(backup.get("timestamp"), str)
        and _records(backup.get("devices"))
        and _records(backup.get("users"))
        and isinstance(logs, dict)
        and all(_records(entries) for entries in logs.values())
        and isinstance(settings, dict)
        and isinstance(settings.get("adminNumber"), str)
        and (settings.get("activeDeviceId") is None or isinstance(settings.get("activeDeviceId"), str))
        and isinstance(settings.get("completedSteps"), list)
    )


class BackupService:
    """Versioned JSON export/import of everything held by ``storage``."""

    def __init__(
        self,
        storage: Storage,
        *,
        backup_dir: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._storage = storage
        self._backup_dir = backup_dir
        self._clock = clock

    @property
    def backup_dir(self) -> str | None:
        return self._backup_dir

    def suggested_filename(self) -> str:
        return backup_filename(self._clock())

    def create_backup(self) -> str:
        try:
            data = self._storage.get_data()
            backup = {
                "version": BACKUP_VERSION,
                "timestamp": self._clock().isoformat(),
                "devices": data["devices"],
                "users": data["users"],
                "logs": data["logs"],
                "settings": data["settings"],
            }
            return json.dumps(backup, ensure_ascii=False, indent=2)
        except Exception as e:
            _LOGGER.error("Failed to create backup: %s", e)
            raise BackupFailed("Failed to create backup") from e

    def restore_from_backup(self, text: str) -> bool:
        cleaned = clean_backup_text(text)
        if not cleaned:
            raise InvalidBackupFormat("Empty backup text")
        try:
            backup = json.loads(cleaned)
        except ValueError as e:
            raise InvalidBackupFormat(f"Backup is not valid JSON: {e}") from e
        return self.restore_from_data(backup)

    def restore_from_data(self, backup: Any) -> bool:
        if not is_valid_backup(backup):
            raise InvalidBackupFormat("Invalid backup format")
        self._storage.replace_data(
            {
                "devices": backup["devices"],
                "users": backup["users"],
                "logs": backup["logs"],
                "settings": backup["settings"],
            }
        )
        _LOGGER.info(
            "Restored backup from %s (%d devices, %d users)",
            backup["timestamp"],
            len(backup["devices"]),
            len(backup["users"]),
        )
        return True

    def write_backup_file(self, directory: str, text: str | None = None) -> str:
        if text is None:
            text = self.create_backup()
        path = os.path.join(directory, backup_filename(self._clock()))
        tmp = path + ".tmp"
        try:
            os.makedirs(directory, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, path)
        except OSError as e:
            _LOGGER.error("Failed to write backup %s: %s", path, e)
            raise BackupFailed(f"Failed to write backup {path}") from e
        return path

    def checkpoint(self) -> str:
        """Create a backup; also store it on disk when a backup directory is set."""
        text = self.create_backup()
        if self._backup_dir:
            path = self.write_backup_file(self._backup_dir, text)
            _LOGGER.debug("Backup checkpoint written to %s", path)
        return text
