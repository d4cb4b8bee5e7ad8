from __future__ import annotations

import logging
import os
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from .backup import BackupService
from .device_manager import DeviceManager
from .errors import (
    GsmRelayError,
    IncompleteOperation,
    InvalidArgument,
    InvalidBackupFormat,
    NotFound,
    Unavailable,
)
from .local_storage import LocalStorage
from .mqtt_client import MqttClient
from .settings import DISPATCH_MQTT, DISPATCH_URI, Settings, load_settings, read_options
from .sms import MqttSmsDispatcher, SMSService, SmsDispatcher, UriSmsDispatcher
from .store import Storage

_LOGGER = logging.getLogger("gsm_relay")
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())

APP_VERSION = "0.1.0"


def _configure_logging(debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    root.setLevel(level)

    for name in (
        "gsm_relay",
        "gsm_relay.storage",
        "gsm_relay.sms",
        "gsm_relay.backup",
        "gsm_relay.mqtt",
        "uvicorn",
        "uvicorn.error",
        "uvicorn.access",
    ):
        logging.getLogger(name).setLevel(level)

    # paho is chatty at DEBUG; only follow it when debugging.
    logging.getLogger("paho").setLevel(level if debug else logging.WARNING)


def _status_for(exc: GsmRelayError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, (InvalidArgument, InvalidBackupFormat)):
        return 400
    if isinstance(exc, Unavailable):
        return 503
    if isinstance(exc, IncompleteOperation):
        return 502
    return 500


def create_app(settings: Settings | None = None, *, dispatcher: SmsDispatcher | None = None) -> FastAPI:
    api = FastAPI(title="GSM Relay Registry", version=APP_VERSION)

    if settings is None:
        settings = load_settings(read_options())
    api.state.settings = settings
    _configure_logging(settings.debug)

    mqtt: MqttClient | None = None
    if dispatcher is None:
        if settings.dispatcher == DISPATCH_MQTT:
            mqtt = MqttClient(
                host=settings.mqtt.host,
                port=settings.mqtt.port,
                username=settings.mqtt.username,
                password=settings.mqtt.password,
                client_id=settings.mqtt.client_id,
            )
            dispatcher = MqttSmsDispatcher(mqtt, settings.mqtt.sms_topic)
        elif settings.dispatcher == DISPATCH_URI:
            dispatcher = UriSmsDispatcher()
    api.state.mqtt = mqtt

    storage = Storage(LocalStorage(settings.data_dir))
    backup = BackupService(storage, backup_dir=settings.backup_dir)
    sms = SMSService(dispatcher)
    manager = DeviceManager(storage, sms, backup)
    api.state.storage = storage
    api.state.backup = backup
    api.state.sms = sms
    api.state.manager = manager

    @api.on_event("startup")
    async def _startup() -> None:
        _LOGGER.info(
            "GSM relay registry %s: data=%s dispatcher=%s",
            APP_VERSION,
            settings.data_dir,
            sms.channel or "none",
        )
        if mqtt is not None:
            _LOGGER.info("Starting MQTT client %s:%s", settings.mqtt.host, settings.mqtt.port)
            mqtt.connect()

    @api.on_event("shutdown")
    async def _shutdown() -> None:
        if mqtt is not None:
            mqtt.disconnect()

    @api.exception_handler(GsmRelayError)
    async def _registry_error(request: Request, exc: GsmRelayError) -> JSONResponse:
        status = _status_for(exc)
        if status >= 500:
            _LOGGER.warning("%s %s failed: %s", request.method, request.url.path, exc)
        detail: Any = str(exc)
        if isinstance(exc, IncompleteOperation):
            detail = {
                "error": str(exc.__cause__ or exc),
                "operation": exc.operation,
                "failed_step": exc.failed_step,
                "completed_steps": list(exc.completed_steps),
                "record": exc.record,
            }
        return JSONResponse(status_code=status, content={"detail": detail})

    @api.get("/health")
    async def health():
        out: dict[str, Any] = {
            "ok": True,
            "version": APP_VERSION,
            "sms": {"channel": sms.channel, "available": sms.is_available()},
        }
        if mqtt is not None:
            out["mqtt"] = asdict(mqtt.status())
        return out

    @api.get("/api/devices")
    async def list_devices():
        return storage.get_devices()

    @api.post("/api/devices", status_code=201)
    async def add_device(payload: dict[str, Any]):
        return manager.initialize_device(payload)

    @api.get("/api/devices/{device_id}")
    async def get_device(device_id: str):
        device = storage.get_device_by_id(device_id)
        if device is None:
            raise HTTPException(status_code=404, detail="Device not found")
        return device

    @api.patch("/api/devices/{device_id}")
    async def update_device(device_id: str, payload: dict[str, Any]):
        device = manager.update_device(device_id, payload)
        if device is None:
            raise HTTPException(status_code=404, detail="Device not found")
        return device

    @api.delete("/api/devices/{device_id}")
    async def delete_device(device_id: str):
        return {"ok": manager.delete_device(device_id)}

    @api.post("/api/devices/{device_id}/commands")
    async def send_command(device_id: str, payload: dict[str, Any]):
        action = str(payload.get("action") or "").strip()
        if not action:
            raise HTTPException(status_code=400, detail="Missing: action")
        params = payload.get("params")
        if params is not None and not isinstance(params, dict):
            raise HTTPException(status_code=400, detail="params must be an object")
        result = manager.send_device_command(device_id, action, params)
        return asdict(result)

    @api.put("/api/devices/{device_id}/relay_settings")
    async def update_relay_settings(device_id: str, payload: dict[str, Any]):
        return manager.update_relay_settings(device_id, payload)

    @api.get("/api/devices/{device_id}/logs")
    async def device_logs(device_id: str):
        if storage.get_device_by_id(device_id) is None:
            raise HTTPException(status_code=404, detail="Device not found")
        return storage.get_device_logs(device_id)

    @api.get("/api/devices/{device_id}/users")
    async def device_users(device_id: str):
        if storage.get_device_by_id(device_id) is None:
            raise HTTPException(status_code=404, detail="Device not found")
        return storage.get_users(device_id)

    @api.post("/api/devices/{device_id}/users", status_code=201)
    async def add_user(device_id: str, payload: dict[str, Any]):
        return manager.add_user(device_id, payload)

    @api.delete("/api/users/{user_id}")
    async def delete_user(user_id: str):
        return {"ok": manager.remove_user(user_id)}

    @api.get("/api/settings")
    async def get_settings():
        return storage.get_global_settings()

    @api.patch("/api/settings")
    async def update_settings(payload: dict[str, Any]):
        return storage.update_global_settings(payload)

    @api.put("/api/settings/active_device")
    async def set_active_device(payload: dict[str, Any]):
        manager.set_active_device(payload.get("deviceId"))
        return storage.get_global_settings()

    @api.get("/api/backup")
    async def download_backup():
        text = backup.create_backup()
        headers = {"Content-Disposition": f'attachment; filename="{backup.suggested_filename()}"'}
        return Response(content=text, media_type="application/json; charset=utf-8", headers=headers)

    @api.post("/api/restore")
    async def restore(payload: dict[str, Any]):
        text = payload.get("text")
        data = payload.get("data")
        if isinstance(text, str) and text.strip():
            backup.restore_from_backup(text)
        elif isinstance(data, dict):
            backup.restore_from_data(data)
        else:
            raise HTTPException(status_code=400, detail="Provide 'text' or 'data'")
        return {"ok": True, "devices": len(storage.get_devices())}

    return api


def main() -> None:
    import uvicorn

    app = create_app()
    port = app.state.settings.port
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    main()
