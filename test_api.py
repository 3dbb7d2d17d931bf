"""
Tea Machine — HTTP surface tests
"""

import pytest
from fastapi.testclient import TestClient

from config import Settings
from conftest import payload
from controller import TeaMachine
from errors import PairingRejectedError
from main import create_app
from notifications import LogSink
from store import MemoryStore


# ── Fixtures ──────────────────────────────────────────────────────────────────

@pytest.fixture
def machine(transport):
    return TeaMachine(transport=transport, store=MemoryStore(), sink=LogSink(), account_id="acct-api")


@pytest.fixture
def client(machine):
    app = create_app(machine, settings=Settings(account_id="acct-api"))
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


def push(client, machine, transport, data):
    """Deliver a device notification on the app's event loop and wait for it."""
    client.portal.call(transport.push, data)
    client.portal.call(machine.settle)


def connect(client):
    r = client.post("/connect")
    assert r.status_code == 200
    return r


# ── View ──────────────────────────────────────────────────────────────────────

def test_view_before_connecting(client):
    r = client.get("/")
    assert r.status_code == 200
    data = r.json()
    assert data["connected"] is False
    assert data["machine"] is None
    assert data["water"]["remaining_ml"] == 1700
    assert data["brew"]["next_target_ms"] == 300_000


def test_session_headers(client):
    r = client.get("/")
    assert r.headers["x-machine-session"] == "closed"
    assert r.headers["x-tea-machine"] == "acct-api"
    connect(client)
    assert client.get("/").headers["x-machine-session"] == "open"


# ── Connection ────────────────────────────────────────────────────────────────

def test_connect_and_disconnect(client):
    assert connect(client).json()["connected"] is True
    r = client.post("/disconnect")
    assert r.status_code == 200
    assert r.json()["connected"] is False


def test_connect_failure_returns_503(client, transport):
    transport.connect_error = PairingRejectedError("no TeaMachine nearby")
    r = client.post("/connect")
    assert r.status_code == 503
    detail = r.json()["detail"]
    assert detail["kind"] == "PairingRejectedError"


def test_notifications_feed(client):
    connect(client)
    titles = [n["title"] for n in client.get("/notifications").json()["notifications"]]
    assert titles == ["Connected"]


# ── Commands ──────────────────────────────────────────────────────────────────

def test_command_without_session_returns_409(client):
    r = client.post("/power", json={"on": True})
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "Not Connected"


def test_power_tea_heater_commands(client, transport):
    connect(client)
    assert client.post("/power", json={"on": True}).status_code == 200
    assert client.post("/tea", json={"tea": "GREEN"}).status_code == 200
    assert client.post("/heater", json={"on": False}).status_code == 200
    assert transport.commands == ["SYS:ON", "SET:TEA=GREEN", "HEAT:STOP"]


def test_unknown_tea_is_rejected(client):
    connect(client)
    r = client.post("/tea", json={"tea": "OOLONG"})
    assert r.status_code == 422


def test_write_failure_returns_502(client, transport):
    connect(client)
    transport.write_error = OSError("gatt write failed")
    r = client.post("/heater", json={"on": True})
    assert r.status_code == 502


# ── Brewing ───────────────────────────────────────────────────────────────────

def test_brew_start_reaches_device(client, machine, transport):
    connect(client)
    push(client, machine, transport, payload())
    r = client.post("/brew", json={"on": True})
    assert r.status_code == 200
    assert transport.commands == ["BREW:START"]


def test_brew_refused_when_off(client, machine, transport):
    connect(client)
    push(client, machine, transport, payload(sys="OFF"))
    r = client.post("/brew", json={"on": True})
    assert r.status_code == 409
    detail = r.json()["detail"]
    assert detail["title"] == "Cannot Brew"
    assert transport.commands == []


def test_brew_refused_when_leaves_spent(client, machine, transport):
    connect(client)
    push(client, machine, transport, payload(brew="SOAKING", brew_ms=0))
    push(client, machine, transport, payload(brew="SOAKING", brew_ms=720_000))
    push(client, machine, transport, payload(brew="DONE", brew_ms=720_000))
    r = client.post("/brew", json={"on": True})
    assert r.status_code == 409
    assert r.json()["detail"]["description"] == "Replace leaves first."

    r = client.post("/leaves/replace")
    assert r.status_code == 200
    assert r.json()["leaf"]["cumulative_ms"] == 0
    assert transport.commands == ["LEAVES:REPLACED"]
    assert client.post("/brew", json={"on": True}).status_code == 200


# ── Water ─────────────────────────────────────────────────────────────────────

def test_dispense_until_low(client, machine, transport):
    connect(client)
    push(client, machine, transport, payload())
    codes = [client.post("/dispense/cup").status_code for _ in range(4)]
    assert codes == [200, 200, 200, 409]
    assert client.get("/").json()["water"]["remaining_ml"] == 837.5
    titles = [n["title"] for n in client.get("/notifications").json()["notifications"]]
    assert titles.count("Water Low") == 1


def test_unknown_dispense_kind(client):
    r = client.post("/dispense/espresso")
    assert r.status_code == 404
    assert "allowed" in r.json()["detail"]


def test_refill_sets_reminder(client):
    r = client.post("/water/refill")
    assert r.status_code == 200
    data = r.json()
    assert data["water"]["remaining_ml"] == 1700
    assert data["refill_brew_reminder"] is True


def test_non_finite_snapshot_keeps_view_serializable(client, machine, transport):
    connect(client)
    push(client, machine, transport, payload(T=97.5))
    push(client, machine, transport, payload(T=float("nan")))
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["machine"]["temperature_c"] == 97.5
    assert machine.session.dropped_payloads == 1
