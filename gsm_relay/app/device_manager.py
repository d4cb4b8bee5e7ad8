from __future__ import annotations

import logging
from typing import Any

from .backup import BackupService
from .errors import IncompleteOperation, InvalidArgument, MissingParameter, NotFound
from .models import DEFAULT_RELAY_SETTINGS, LOG_RELAY, LOG_SETTINGS, LOG_SYSTEM, LOG_USERS, RelaySettings
from .sms import (
    ACTION_ADD_USER,
    ACTION_CLOSE,
    ACTION_DELETE_USER,
    ACTION_OPEN,
    ACTION_SET_ACCESS_CONTROL,
    ACTION_SET_LATCH_TIME,
    ACTION_STATUS,
    ACTIONS,
    DispatchResult,
    SMSService,
)
from .store import Storage

_LOGGER = logging.getLogger("gsm_relay")


def _require_params(action: str, params: dict[str, Any] | None) -> dict[str, Any]:
    p = dict(params or {})
    if action == ACTION_SET_LATCH_TIME:
        seconds = p.get("seconds")
        if isinstance(seconds, bool) or not isinstance(seconds, int):
            raise MissingParameter("Latch time in seconds is required")
    elif action == ACTION_SET_ACCESS_CONTROL:
        if not isinstance(p.get("mode"), str):
            raise MissingParameter("Access control mode is required")
    elif action == ACTION_ADD_USER:
        for key in ("phoneNumber", "serialNumber"):
            if not isinstance(p.get(key), str) or not p[key].strip():
                raise MissingParameter(f"{key} is required")
    elif action == ACTION_DELETE_USER:
        if not isinstance(p.get("serialNumber"), str) or not p["serialNumber"].strip():
            raise MissingParameter("serialNumber is required")
    return p


def _describe(action: str, p: dict[str, Any]) -> tuple[str, str, str]:
    """(log action, log details, log category) for a relay command."""
    if action == ACTION_OPEN:
        return "Gate Open", "Gate open command sent", LOG_RELAY
    if action == ACTION_CLOSE:
        return "Gate Close", "Gate close command sent", LOG_RELAY
    if action == ACTION_STATUS:
        return "Status Check", "Device status check requested", LOG_RELAY
    if action == ACTION_SET_LATCH_TIME:
        return "Set Latch Time", f"Latch time set to {p['seconds']} seconds", LOG_RELAY
    if action == ACTION_SET_ACCESS_CONTROL:
        return "Set Access Control", f"Access control set to {p['mode']}", LOG_RELAY
    if action == ACTION_ADD_USER:
        return "Add User", f"User slot {p['serialNumber']} assigned to {p['phoneNumber']}", LOG_USERS
    return "Delete User", f"User slot {p['serialNumber']} cleared", LOG_USERS


class DeviceManager:
    """Compound device operations over the repository, the SMS encoder and backups.

    Each operation runs its steps in order. Once the primary mutation is
    committed, a failing later step raises ``IncompleteOperation`` naming the
    steps already done; those are not undone.
    """

    def __init__(self, storage: Storage, sms: SMSService, backup: BackupService):
        self._storage = storage
        self._sms = sms
        self._backup = backup

    @staticmethod
    def _incomplete(
        operation: str,
        step: str,
        completed: tuple[str, ...],
        record: dict[str, Any] | None,
        exc: Exception,
    ) -> IncompleteOperation:
        _LOGGER.error("%s: step %s failed after %s: %s", operation, step, ", ".join(completed), exc)
        return IncompleteOperation(operation, failed_step=step, completed_steps=completed, record=record)

    def _get_device(self, device_id: Any) -> dict[str, Any]:
        device = self._storage.get_device_by_id(device_id)
        if device is None:
            raise NotFound("Device not found")
        return device

    def initialize_device(self, fields: dict[str, Any]) -> dict[str, Any]:
        device = self._storage.add_device({**(fields or {}), "relaySettings": DEFAULT_RELAY_SETTINGS.to_json()})
        _LOGGER.info("Device %s (%s) added as %s", device["name"], device["unitNumber"], device["id"])

        try:
            self._backup.checkpoint()
        except Exception as e:
            raise self._incomplete("initialize_device", "backup", ("add_device",), device, e) from e

        try:
            self._storage.add_device_log(
                device["id"],
                "Device Created",
                f"Device {device['name']} ({device['unitNumber']}) was initialized",
                True,
                LOG_SYSTEM,
            )
        except Exception as e:
            raise self._incomplete("initialize_device", "log", ("add_device", "backup"), device, e) from e
        return device

    def update_device(self, device_id: Any, updates: dict[str, Any]) -> dict[str, Any] | None:
        device = self._storage.update_device(device_id, updates)
        if device is None:
            return None

        step = "log"
        try:
            self._storage.add_device_log(device["id"], "Device Updated", "Device settings were updated", True, LOG_SETTINGS)
            step = "backup"
            self._backup.checkpoint()
        except Exception as e:
            done = ("update_device",) if step == "log" else ("update_device", "log")
            raise self._incomplete("update_device", step, done, device, e) from e
        return device

    def delete_device(self, device_id: Any) -> bool:
        device = self._get_device(device_id)
        success = self._storage.delete_device(device["id"])
        if success:
            _LOGGER.info("Device %s (%s) deleted", device["name"], device["id"])
            try:
                self._backup.checkpoint()
            except Exception as e:
                raise self._incomplete("delete_device", "backup", ("delete_device",), device, e) from e
        return success

    def set_active_device(self, device_id: Any | None) -> bool:
        if device_id is not None:
            self._get_device(device_id)
        return self._storage.set_active_device(device_id)

    def send_device_command(
        self,
        device_id: Any,
        action: str,
        params: dict[str, Any] | None = None,
    ) -> DispatchResult:
        device = self._get_device(device_id)
        if action not in ACTIONS:
            raise InvalidArgument(f"Invalid command action: {action!r}")
        p = _require_params(action, params)
        command = self._sms.build_command(device, action, p)
        log_action, log_details, category = _describe(action, p)

        try:
            result = self._sms.send_command(device, command)
        except Exception:
            self._storage.add_device_log(device["id"], log_action, log_details, False, category)
            raise
        self._storage.add_device_log(device["id"], log_action, log_details, result.dispatched, category)
        return result

    def update_relay_settings(self, device_id: Any, settings: dict[str, Any]) -> dict[str, Any] | None:
        self._get_device(device_id)
        relay = RelaySettings.parse(settings)

        updated = self._storage.update_device(device_id, {"relaySettings": relay.to_json()})
        if updated is None:
            return None

        done: tuple[str, ...] = ("update_device",)
        step = "set_access_control"
        try:
            self.send_device_command(device_id, ACTION_SET_ACCESS_CONTROL, {"mode": relay.access_control})
            done += (step,)
            step = "set_latch_time"
            self.send_device_command(device_id, ACTION_SET_LATCH_TIME, {"seconds": relay.latch_seconds})
            done += (step,)
            step = "log"
            self._storage.add_device_log(
                updated["id"],
                "Relay Settings Updated",
                f"Updated access control to {relay.access_control} and latch time to {relay.latch_time}",
                True,
                LOG_SETTINGS,
            )
        except Exception as e:
            raise self._incomplete("update_relay_settings", step, done, updated, e) from e
        return updated

    def add_user(self, device_id: Any, fields: dict[str, Any]) -> dict[str, Any]:
        device = self._get_device(device_id)
        payload = {**(fields or {}), "deviceId": device["id"]}
        params = _require_params(
            ACTION_ADD_USER,
            {"phoneNumber": payload.get("phoneNumber"), "serialNumber": payload.get("serialNumber")},
        )
        # Reject values the command grammar cannot carry before anything is stored.
        self._sms.build_command(device, ACTION_ADD_USER, params)

        user = self._storage.add_user(payload)
        try:
            self.send_device_command(
                device["id"],
                ACTION_ADD_USER,
                {"phoneNumber": user["phoneNumber"], "serialNumber": user["serialNumber"]},
            )
        except Exception as e:
            raise self._incomplete("add_user", "dispatch", ("add_user",), user, e) from e
        return user

    def remove_user(self, user_id: Any) -> bool:
        user = self._storage.get_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found")
        if self._storage.get_device_by_id(user["deviceId"]) is not None:
            result = self.send_device_command(
                user["deviceId"], ACTION_DELETE_USER, {"serialNumber": user["serialNumber"]}
            )
            if not result.dispatched:
                # The relay still holds the slot; keep the record so it can be retried.
                _LOGGER.warning("deleteUser for %s was not accepted; user kept", user["id"])
                return False
        else:
            _LOGGER.warning("User %s references missing device %s; removing record only", user["id"], user["deviceId"])
        return self._storage.delete_user(user["id"])
