from __future__ import annotations

import logging
import urllib.parse
import webbrowser
from dataclasses import dataclass
from typing import Any, Protocol

from .errors import InvalidArgument, Unavailable
from .models import check_access_mode, format_latch_time
from .mqtt_client import MqttClient

_LOGGER = logging.getLogger("gsm_relay.sms")

ACTION_OPEN = "open"
ACTION_CLOSE = "close"
ACTION_STATUS = "status"
ACTION_ADD_USER = "addUser"
ACTION_DELETE_USER = "deleteUser"
ACTION_SET_LATCH_TIME = "setLatchTime"
ACTION_SET_ACCESS_CONTROL = "setAccessControl"

ACTIONS = (
    ACTION_OPEN,
    ACTION_CLOSE,
    ACTION_STATUS,
    ACTION_ADD_USER,
    ACTION_DELETE_USER,
    ACTION_SET_LATCH_TIME,
    ACTION_SET_ACCESS_CONTROL,
)


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of handing a command to an SMS-compose surface.

    ``dispatched`` only says the surface accepted the message. SMS gives no
    acknowledgement, so ``delivery_confirmed`` is always False: nothing here
    knows whether the relay received or executed the command.
    """

    dispatched: bool
    recipient: str
    command: str
    channel: str
    delivery_confirmed: bool = False


class SmsDispatcher(Protocol):
    name: str

    def is_available(self) -> bool: ...

    def dispatch(self, recipient: str, body: str) -> bool: ...


def sms_uri(recipient: str, body: str) -> str:
    return f"sms:{recipient}?body={urllib.parse.quote(body, safe='')}"


class UriSmsDispatcher:
    """Open an ``sms:`` URI with the system handler (messaging app)."""

    name = "uri"

    def is_available(self) -> bool:
        try:
            webbrowser.get()
        except webbrowser.Error:
            return False
        return True

    def dispatch(self, recipient: str, body: str) -> bool:
        return bool(webbrowser.open(sms_uri(recipient, body), new=2))


class MqttSmsDispatcher:
    """Publish the message to an SMS gateway listening on ``topic``."""

    name = "mqtt"

    def __init__(self, client: MqttClient, topic: str):
        self._client = client
        self._topic = topic

    def is_available(self) -> bool:
        return self._client.status().connected

    def dispatch(self, recipient: str, body: str) -> bool:
        return self._client.publish(self._topic, {"to": recipient, "body": body})


def _password(device: dict[str, Any]) -> str:
    pw = str((device or {}).get("password") or "")
    if not pw:
        raise InvalidArgument("device has no password")
    return pw


def _field(value: Any, label: str) -> str:
    s = str(value or "").strip()
    if not s:
        raise InvalidArgument(f"{label} is required")
    if "#" in s:
        raise InvalidArgument(f"{label} must not contain '#'")
    return s


class SMSService:
    def __init__(self, dispatcher: SmsDispatcher | None = None):
        self._dispatcher = dispatcher

    @property
    def channel(self) -> str | None:
        return self._dispatcher.name if self._dispatcher is not None else None

    # -- encoder ----------------------------------------------------------

    @staticmethod
    def generate_access_code(device: dict[str, Any]) -> str:
        return f"{_password(device)}CC"

    @staticmethod
    def generate_close(device: dict[str, Any]) -> str:
        return f"{_password(device)}DD"

    @staticmethod
    def generate_status_check(device: dict[str, Any]) -> str:
        return f"{_password(device)}EE"

    @staticmethod
    def generate_add_user(device: dict[str, Any], phone_number: str, serial_number: str) -> str:
        serial = _field(serial_number, "serialNumber")
        phone = _field(phone_number, "phoneNumber")
        return f"{_password(device)}A{serial}#{phone}#"

    @staticmethod
    def generate_delete_user(device: dict[str, Any], serial_number: str) -> str:
        return f"{_password(device)}A{_field(serial_number, 'serialNumber')}##"

    @staticmethod
    def generate_set_latch_time(device: dict[str, Any], seconds: int) -> str:
        return f"{_password(device)}GOT{format_latch_time(seconds)}#"

    @staticmethod
    def generate_set_access_control(device: dict[str, Any], mode: str) -> str:
        return f"{_password(device)}{check_access_mode(mode)}"

    @classmethod
    def build_command(cls, device: dict[str, Any], action: str, params: dict[str, Any] | None = None) -> str:
        p = params or {}
        if action == ACTION_OPEN:
            return cls.generate_access_code(device)
        if action == ACTION_CLOSE:
            return cls.generate_close(device)
        if action == ACTION_STATUS:
            return cls.generate_status_check(device)
        if action == ACTION_ADD_USER:
            return cls.generate_add_user(device, p.get("phoneNumber"), p.get("serialNumber"))
        if action == ACTION_DELETE_USER:
            return cls.generate_delete_user(device, p.get("serialNumber"))
        if action == ACTION_SET_LATCH_TIME:
            return cls.generate_set_latch_time(device, p.get("seconds"))
        if action == ACTION_SET_ACCESS_CONTROL:
            return cls.generate_set_access_control(device, p.get("mode"))
        raise InvalidArgument(f"invalid command action: {action!r}")

    # -- dispatch ---------------------------------------------------------

    def is_available(self) -> bool:
        if self._dispatcher is None:
            return False
        try:
            return bool(self._dispatcher.is_available())
        except Exception as e:
            _LOGGER.warning("SMS surface %s availability check failed: %s", self._dispatcher.name, e)
            return False

    def send_command(self, device: dict[str, Any], command: str) -> DispatchResult:
        dispatcher = self._dispatcher
        if dispatcher is None or not self.is_available():
            raise Unavailable("SMS functionality not available on this device")
        recipient = str(device.get("unitNumber") or "").strip()
        if not recipient:
            raise InvalidArgument("device has no unit number")
        try:
            ok = bool(dispatcher.dispatch(recipient, command))
        except Exception as e:
            _LOGGER.warning("Failed to send SMS to %s via %s: %s", recipient, dispatcher.name, e)
            raise
        if not ok:
            _LOGGER.warning("SMS surface %s did not accept the message for %s", dispatcher.name, recipient)
        return DispatchResult(dispatched=ok, recipient=recipient, command=command, channel=dispatcher.name)
