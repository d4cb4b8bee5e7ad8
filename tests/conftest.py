from __future__ import annotations

import pytest

from gsm_relay.app.backup import BackupService
from gsm_relay.app.device_manager import DeviceManager
from gsm_relay.app.local_storage import LocalStorage
from gsm_relay.app.sms import SMSService
from gsm_relay.app.store import Storage


class FakeDispatcher:
    """Records every message instead of opening a messaging app."""

    name = "fake"

    def __init__(self, *, available: bool = True, accept: bool = True):
        self.available = available
        self.accept = accept
        self.fail_on: set[int] = set()
        self.sent: list[tuple[str, str]] = []
        self.calls = 0

    def is_available(self) -> bool:
        return self.available

    def dispatch(self, recipient: str, body: str) -> bool:
        self.calls += 1
        if self.calls in self.fail_on:
            raise RuntimeError("compose surface crashed")
        self.sent.append((recipient, body))
        return self.accept


@pytest.fixture
def backend(tmp_path):
    return LocalStorage(str(tmp_path / "data"))


@pytest.fixture
def storage(backend):
    return Storage(backend)


@pytest.fixture
def dispatcher():
    return FakeDispatcher()


@pytest.fixture
def sms(dispatcher):
    return SMSService(dispatcher)


@pytest.fixture
def backup(storage):
    return BackupService(storage)


@pytest.fixture
def manager(storage, sms, backup):
    return DeviceManager(storage, sms, backup)


@pytest.fixture
def device_fields():
    return {"name": "Front gate", "unitNumber": "+15550001111", "password": "1234"}
