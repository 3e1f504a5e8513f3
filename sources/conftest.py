# conftest.py
"""Shared fixtures: an in‑memory store and a scriptable fake BLE transport."""

import os
import tempfile

# keep test runs from writing campergas.log into the working directory
os.environ.setdefault(
    "CAMPERGAS_LOG_FILE", os.path.join(tempfile.gettempdir(), "campergas-test.log")
)

import pytest
from bleak.exc import BleakError

from measurement_db import MeasurementDB
from measurement_repository import MeasurementRepository


class FakeClient:
    """Stands in for ``BleakClient``; notifications are pushed by the test."""

    def __init__(self, device, disconnected_callback=None, fail_connect=False, reads=None, connect_gate=None):
        self.device = device
        self.disconnected_callback = disconnected_callback
        self.fail_connect = fail_connect
        self.handlers = {}
        self.reads = reads if reads is not None else {}
        self.is_connected = False
        self.disconnect_calls = 0
        self.connect_gate = connect_gate

    async def connect(self):
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.fail_connect:
            raise BleakError("connection refused")
        self.is_connected = True

    async def start_notify(self, char_uuid, callback):
        self.handlers[char_uuid] = callback

    async def read_gatt_char(self, char_uuid):
        queued = self.reads.get(char_uuid)
        if not queued:
            return bytearray()
        return bytearray(queued.pop(0))

    async def disconnect(self):
        self.disconnect_calls += 1
        self.is_connected = False

    # helpers for the tests
    def notify(self, char_uuid, payload: bytes) -> None:
        self.handlers[char_uuid](char_uuid, bytearray(payload))

    def drop_link(self) -> None:
        self.is_connected = False
        self.disconnected_callback(self)


class FakeBle:
    """``client_factory`` + ``device_finder`` pair with failure knobs."""

    def __init__(self):
        self.clients = []
        self.connect_failures = 0
        self.device_present = True
        self.reads = {}
        self.find_calls = 0
        self.connect_gate = None      # asyncio.Event that holds connect() open

    async def find_device(self, address, timeout=None):
        self.find_calls += 1
        return address if self.device_present else None

    def client_factory(self, device, disconnected_callback=None):
        fail = self.connect_failures > 0
        if fail:
            self.connect_failures -= 1
        client = FakeClient(device, disconnected_callback, fail, self.reads, self.connect_gate)
        self.clients.append(client)
        return client

    @property
    def client(self) -> FakeClient:
        return self.clients[-1]


@pytest.fixture
def db():
    database = MeasurementDB(":memory:")
    yield database
    database.close()


@pytest.fixture
def repo(db):
    return MeasurementRepository(db)


@pytest.fixture
def ble():
    return FakeBle()
