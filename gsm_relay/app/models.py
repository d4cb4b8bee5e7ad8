from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Literal

from .errors import InvalidArgument

ACCESS_AUT = "AUT"
ACCESS_ALL = "ALL"
ACCESS_MODES = (ACCESS_AUT, ACCESS_ALL)

AccessMode = Literal["AUT", "ALL"]

MAX_LATCH_SECONDS = 999

DEVICE_FIELDS = ("name", "unitNumber", "password", "relaySettings")
USER_FIELDS = ("name", "phoneNumber", "serialNumber", "startTime", "endTime")

LOG_SYSTEM = "system"
LOG_SETTINGS = "settings"
LOG_RELAY = "relay"
LOG_USERS = "users"


def format_latch_time(seconds: Any) -> str:
    """Render latch seconds as the 3-digit field the relay expects."""
    if isinstance(seconds, bool) or not isinstance(seconds, int):
        raise InvalidArgument("latch time must be an integer number of seconds")
    if seconds < 0 or seconds > MAX_LATCH_SECONDS:
        raise InvalidArgument(f"latch time must be between 0 and {MAX_LATCH_SECONDS} seconds")
    return f"{seconds:03d}"


def check_access_mode(mode: Any) -> str:
    if mode not in ACCESS_MODES:
        raise InvalidArgument(f"access control mode must be AUT or ALL, got {mode!r}")
    return str(mode)


@dataclass(frozen=True)
class RelaySettings:
    access_control: str = ACCESS_AUT
    latch_time: str = "000"

    @property
    def latch_seconds(self) -> int:
        return int(self.latch_time)

    @classmethod
    def parse(cls, value: Any) -> "RelaySettings":
        """Accept a dict or the stored JSON string; validate both fields."""
        if isinstance(value, RelaySettings):
            return value
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except ValueError:
                raise InvalidArgument("relaySettings is not valid JSON") from None
        if not isinstance(value, dict):
            raise InvalidArgument("relaySettings must be an object")

        mode = check_access_mode(value.get("accessControl"))
        latch = value.get("latchTime")
        if isinstance(latch, int) and not isinstance(latch, bool):
            latch = format_latch_time(latch)
        latch = str(latch or "")
        if len(latch) != 3 or not latch.isascii() or not latch.isdigit():
            raise InvalidArgument("latchTime must be exactly 3 digits")
        return cls(access_control=mode, latch_time=latch)

    def to_dict(self) -> dict[str, str]:
        return {"accessControl": self.access_control, "latchTime": self.latch_time}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


DEFAULT_RELAY_SETTINGS = RelaySettings()


def _required_text(payload: dict[str, Any], key: str) -> str:
    v = str(payload.get(key) or "").strip()
    if not v:
        raise InvalidArgument(f"{key} is required")
    return v


def normalize_device_fields(payload: dict[str, Any], *, partial: bool) -> dict[str, Any]:
    """Keep only known device fields; ``partial`` allows any subset of them."""
    if not isinstance(payload, dict):
        raise InvalidArgument("device fields must be an object")

    out: dict[str, Any] = {}
    for key in ("name", "unitNumber", "password"):
        if key in payload:
            out[key] = _required_text(payload, key)
        elif not partial:
            raise InvalidArgument(f"{key} is required")

    if payload.get("relaySettings") is not None:
        out["relaySettings"] = RelaySettings.parse(payload["relaySettings"]).to_json()
    elif not partial:
        out["relaySettings"] = DEFAULT_RELAY_SETTINGS.to_json()
    return out


def normalize_user_fields(payload: dict[str, Any], *, partial: bool) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise InvalidArgument("user fields must be an object")

    out: dict[str, Any] = {}
    for key in ("name", "phoneNumber", "serialNumber"):
        if key in payload:
            out[key] = _required_text(payload, key)
        elif not partial:
            raise InvalidArgument(f"{key} is required")
    # Optional access window; None clears it.
    for key in ("startTime", "endTime"):
        if key in payload:
            v = payload.get(key)
            out[key] = (str(v).strip() or None) if v is not None else None
    return out
