from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Literal

DISPATCH_URI = "uri"
DISPATCH_MQTT = "mqtt"
DISPATCH_NONE = "none"

DispatchMode = Literal["uri", "mqtt", "none"]


@dataclass(frozen=True)
class MqttConfig:
    host: str
    port: int
    username: str
    password: str
    client_id: str
    sms_topic: str


@dataclass(frozen=True)
class Settings:
    data_dir: str
    backup_dir: str | None
    dispatcher: DispatchMode
    mqtt: MqttConfig
    port: int
    debug: bool


def read_options() -> dict[str, Any]:
    path = os.environ.get("GSM_RELAY_OPTIONS", "/data/options.json")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


def load_settings(options: dict[str, Any]) -> Settings:
    data_dir = str(os.environ.get("GSM_RELAY_DATA") or options.get("data_dir") or "/data/storage").strip()
    backup_dir = str(options.get("backup_dir") or "").strip() or None

    dispatcher = str(options.get("dispatcher") or DISPATCH_URI).strip().lower()
    if dispatcher not in (DISPATCH_URI, DISPATCH_MQTT, DISPATCH_NONE):
        dispatcher = DISPATCH_URI

    mqtt_raw = options.get("mqtt") or {}
    mqtt = MqttConfig(
        host=str(mqtt_raw.get("host") or "core-mosquitto"),
        port=int(mqtt_raw.get("port") or 1883),
        username=str(mqtt_raw.get("username") or ""),
        password=str(mqtt_raw.get("password") or ""),
        client_id=str(mqtt_raw.get("client_id") or "gsm-relay-registry"),
        sms_topic=str(mqtt_raw.get("sms_topic") or "sms/outbox").rstrip("/"),
    )

    return Settings(
        data_dir=data_dir,
        backup_dir=backup_dir,
        dispatcher=dispatcher,  # type: ignore[arg-type]
        mqtt=mqtt,
        port=int(options.get("port") or 8126),
        debug=bool(options.get("debug") or False),
    )
