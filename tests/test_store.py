import json
from datetime import datetime, timezone

import pytest

from gsm_relay.app.errors import InvalidArgument, NotFound, PersistenceFailure
from gsm_relay.app.local_storage import LocalStorage, StorageKey
from gsm_relay.app.store import Storage

FIXED = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_add_then_get_returns_equal_copy(storage, device_fields):
    created = storage.add_device(device_fields)
    fetched = storage.get_device_by_id(created["id"])

    assert fetched == created
    assert fetched is not created
    assert created["createdAt"] == created["updatedAt"]
    assert json.loads(created["relaySettings"]) == {"accessControl": "AUT", "latchTime": "000"}


def test_returned_records_do_not_leak(storage, device_fields):
    created = storage.add_device(device_fields)
    created["name"] = "changed"
    storage.get_devices()[0]["name"] = "changed"
    storage.get_data()["devices"].clear()

    assert storage.get_device_by_id(created["id"])["name"] == "Front gate"


def test_ids_are_unique(storage, device_fields):
    ids = {storage.add_device(device_fields)["id"] for _ in range(50)}
    assert len(ids) == 50


def test_add_requires_core_fields(storage):
    with pytest.raises(InvalidArgument):
        storage.add_device({"name": "x", "unitNumber": "1"})
    assert storage.get_devices() == []


def test_add_validates_relay_settings(storage, device_fields):
    with pytest.raises(InvalidArgument):
        storage.add_device({**device_fields, "relaySettings": {"accessControl": "AUT", "latchTime": "5"}})
    dev = storage.add_device({**device_fields, "relaySettings": {"accessControl": "ALL", "latchTime": 7}})
    assert json.loads(dev["relaySettings"]) == {"accessControl": "ALL", "latchTime": "007"}


def test_add_ignores_caller_ids_and_unknown_fields(storage, device_fields):
    dev = storage.add_device({**device_fields, "id": "mine", "createdAt": "yesterday", "color": "red"})
    assert dev["id"] != "mine"
    assert dev["createdAt"] != "yesterday"
    assert "color" not in dev


def test_update_missing_returns_none(storage, device_fields):
    storage.add_device(device_fields)
    before = storage.get_devices()

    assert storage.update_device("nope", {"name": "X"}) is None
    assert storage.get_devices() == before


def test_update_merges_and_bumps_updated_at(backend, device_fields):
    storage = Storage(backend, clock=lambda: FIXED)
    dev = storage.add_device(device_fields)

    updated = storage.update_device(dev["id"], {"name": "X", "id": "other", "createdAt": "never"})

    assert updated["name"] == "X"
    for key in ("id", "unitNumber", "password", "relaySettings", "createdAt"):
        assert updated[key] == dev[key]
    assert datetime.fromisoformat(updated["updatedAt"]) > datetime.fromisoformat(dev["updatedAt"])

    again = storage.update_device(dev["id"], {"name": "Y"})
    assert datetime.fromisoformat(again["updatedAt"]) > datetime.fromisoformat(updated["updatedAt"])


def test_writes_are_persisted(backend, device_fields):
    storage = Storage(backend)
    dev = storage.add_device(device_fields)
    storage.set_active_device(dev["id"])

    reloaded = Storage(backend)
    assert reloaded.get_device_by_id(dev["id"]) == dev
    assert reloaded.get_global_settings()["activeDeviceId"] == dev["id"]
    assert backend.get_item(StorageKey.APP_DATA)["devices"][0]["id"] == dev["id"]


def test_defaults_when_store_is_empty_or_corrupt(backend):
    assert Storage(backend).get_data() == {
        "devices": [],
        "users": [],
        "logs": {},
        "settings": {"adminNumber": "", "activeDeviceId": None, "completedSteps": []},
    }
    backend.set_item(StorageKey.APP_DATA, ["not", "an", "object"])
    assert Storage(backend).get_devices() == []


def test_legacy_keys_are_migrated(backend):
    backend.set_item(StorageKey.DEVICES, [{"id": "d1", "name": "old"}])
    backend.set_item(StorageKey.SETTINGS, {"adminNumber": "+1", "activeDeviceId": "d1", "completedSteps": []})

    storage = Storage(backend)

    assert storage.get_device_by_id("d1")["name"] == "old"
    assert storage.get_global_settings()["adminNumber"] == "+1"
    assert storage.get_users() == []
    assert backend.get_item(StorageKey.DEVICES) is None
    assert backend.get_item(StorageKey.APP_DATA)["devices"] == [{"id": "d1", "name": "old"}]


def test_deleting_active_device_clears_it(storage, device_fields):
    a = storage.add_device(device_fields)
    b = storage.add_device(device_fields)
    storage.set_active_device(a["id"])

    assert storage.delete_device(b["id"]) is True
    assert storage.get_global_settings()["activeDeviceId"] == a["id"]

    assert storage.delete_device(a["id"]) is True
    assert storage.get_global_settings()["activeDeviceId"] is None
    assert storage.delete_device(a["id"]) is False


def test_delete_cascades_users_and_logs(storage, device_fields):
    a = storage.add_device(device_fields)
    b = storage.add_device(device_fields)
    storage.add_user({"deviceId": a["id"], "name": "Ann", "phoneNumber": "+1", "serialNumber": "01"})
    kept = storage.add_user({"deviceId": b["id"], "name": "Bob", "phoneNumber": "+2", "serialNumber": "01"})
    storage.add_device_log(a["id"], "Gate Open", "sent", True, "relay")

    storage.delete_device(a["id"])

    assert storage.get_users() == [kept]
    assert storage.get_device_logs(a["id"]) == []
    assert a["id"] not in storage.get_data()["logs"]


def test_set_active_device_always_succeeds(storage):
    assert storage.set_active_device(42) is True
    assert storage.get_global_settings()["activeDeviceId"] == "42"
    assert storage.set_active_device(None) is True
    assert storage.get_global_settings()["activeDeviceId"] is None


def test_global_settings(storage):
    s = storage.update_global_settings({"adminNumber": " +15557654321 ", "activeDeviceId": "ignored"})
    assert s == {"adminNumber": "+15557654321", "activeDeviceId": None, "completedSteps": []}

    assert storage.complete_step("add-device") == ["add-device"]
    assert storage.complete_step("add-device") == ["add-device"]
    with pytest.raises(InvalidArgument):
        storage.update_global_settings({"completedSteps": "add-device"})


def test_users(storage, device_fields):
    dev = storage.add_device(device_fields)
    with pytest.raises(NotFound):
        storage.add_user({"deviceId": "missing", "name": "x", "phoneNumber": "+1", "serialNumber": "01"})
    with pytest.raises(InvalidArgument):
        storage.add_user({"deviceId": dev["id"], "name": "x", "serialNumber": "01"})

    user = storage.add_user(
        {"deviceId": dev["id"], "name": "Ann", "phoneNumber": "+1", "serialNumber": "07", "startTime": "2024-01-01T08:00"}
    )
    assert user["startTime"] == "2024-01-01T08:00"
    assert user["endTime"] is None
    assert storage.get_users(dev["id"]) == [user]
    assert storage.get_users("other") == []

    updated = storage.update_user(user["id"], {"name": "Anna", "startTime": None})
    assert updated["name"] == "Anna"
    assert updated["startTime"] is None
    assert updated["serialNumber"] == "07"
    assert storage.update_user("missing", {"name": "x"}) is None

    assert storage.delete_user(user["id"]) is True
    assert storage.delete_user(user["id"]) is False


def test_logs_are_appended_per_device(storage, device_fields):
    dev = storage.add_device(device_fields)
    first = storage.add_device_log(dev["id"], "Gate Open", "Gate open command sent", True, "relay")
    second = storage.add_device_log(dev["id"], "Status Check", "requested", False, "relay")

    logs = storage.get_device_logs(dev["id"])
    assert logs == [first, second]
    assert second["success"] is False
    assert second["deviceId"] == dev["id"]
    assert storage.get_device_logs("unknown") == []


class FailingBackend(LocalStorage):
    def __init__(self, directory):
        super().__init__(directory)
        self.fail = False

    def set_item(self, key, value):
        if self.fail:
            raise PersistenceFailure("disk full")
        super().set_item(key, value)


def test_write_failure_propagates_without_rollback(tmp_path, device_fields):
    backend = FailingBackend(str(tmp_path / "data"))
    storage = Storage(backend)
    backend.fail = True

    with pytest.raises(PersistenceFailure):
        storage.add_device(device_fields)
    assert len(storage.get_devices()) == 1
    assert Storage(LocalStorage(str(tmp_path / "data"))).get_devices() == []


def test_malformed_records_on_disk_are_dropped(backend, device_fields):
    backend.set_item(
        StorageKey.APP_DATA,
        {
            "devices": ["not-a-record", {"id": "d1", "name": "ok"}],
            "users": [None],
            "logs": {"d1": "oops", "d2": [{"id": "l1"}, 3]},
            "settings": {},
        },
    )
    storage = Storage(backend)

    assert [d["id"] for d in storage.get_devices()] == ["d1"]
    assert storage.get_users() == []
    assert storage.get_device_logs("d1") == []
    assert storage.get_device_logs("d2") == [{"id": "l1"}]
    assert storage.add_device_log("d1", "Gate Open", "sent", True, "relay")["deviceId"] == "d1"
