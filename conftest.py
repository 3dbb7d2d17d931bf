"""
Shared fakes for the Tea Machine test suite.
A scripted link stands in for the BLE radio; sinks and stores record calls.
"""

import json

import pytest

from engine import BrewingEngine
from models import COMMAND_CHAR_UUID, STATE_CHAR_UUID, MachineSnapshot
from store import MemoryStore


BASE_STATE = {
    "sys": "ON",
    "tea": "BLACK",
    "T": 96.5,
    "heater": 1,
    "heating": 0,
    "brew": "IDLE",
    "brew_ms": 0,
    "brew_total": 0,
    "pump": 0,
    "dispense": "NONE",
    "needs_refill": 0,
    "event": "NONE",
    "water_ml": 1500,
    "tank_pct": 0.88,
    "leaf_tcum_ms": 0,
    "leaf_tmax_ms": 720000,
    "leaf_ok": 1,
    "next_soak_ms": 300000,
}


def state(**overrides) -> dict:
    return {**BASE_STATE, **overrides}


def payload(**overrides) -> bytes:
    return json.dumps(state(**overrides)).encode("utf-8")


def snapshot(**overrides) -> MachineSnapshot:
    return MachineSnapshot.from_dict(state(**overrides))


class FakeTransport:
    """In-memory LinkTransport. Tests drive notifications and link loss by hand."""

    def __init__(self):
        self.connected = False
        self.characteristics = {COMMAND_CHAR_UUID, STATE_CHAR_UUID}
        self.connect_error: Exception | None = None
        self.write_error: Exception | None = None
        self.writes: list[bytes] = []
        self.disconnect_calls = 0
        self.name_prefix = None
        self._handler = None
        self._on_lost = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def connect(self, name_prefix, service_uuid, on_lost):
        if self.connect_error is not None:
            raise self.connect_error
        self.name_prefix = name_prefix
        self.connected = True
        self._on_lost = on_lost

    def has_characteristic(self, char_uuid):
        return char_uuid in self.characteristics

    async def subscribe(self, char_uuid, handler):
        assert char_uuid == STATE_CHAR_UUID
        self._handler = handler

    async def write(self, char_uuid, data):
        assert char_uuid == COMMAND_CHAR_UUID
        if self.write_error is not None:
            raise self.write_error
        self.writes.append(data)

    async def disconnect(self):
        self.disconnect_calls += 1
        self.connected = False

    # test hooks

    def push(self, data) -> None:
        if isinstance(data, dict):
            data = json.dumps(data)
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._handler(data)

    def drop_link(self) -> None:
        self.connected = False
        self._on_lost()

    @property
    def commands(self) -> list[str]:
        return [w.decode("utf-8").rstrip("\n") for w in self.writes]


class RecordingSink:
    def __init__(self):
        self.notifications = []

    def notify(self, notification):
        self.notifications.append(notification)

    def titles(self) -> list[str]:
        return [n.title for n in self.notifications]

    def count(self, title: str) -> int:
        return self.titles().count(title)

    def recent(self):
        return list(self.notifications)


class CommandRecorder:
    def __init__(self):
        self.commands: list[str] = []
        self.connected = True
        self.error: Exception | None = None

    async def send(self, command: str) -> None:
        if self.error is not None:
            raise self.error
        self.commands.append(command)


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def recorder():
    return CommandRecorder()


@pytest.fixture
def engine(recorder, store, sink):
    return BrewingEngine(
        send=recorder.send,
        store=store,
        sink=sink,
        account_id="acct-1",
        is_connected=lambda: recorder.connected,
    )
