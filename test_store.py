"""
Tea Machine — Persistence and configuration tests
"""

import asyncio
import json

from config import Settings
from models import LedgerRecord
from store import JsonFileStore, MemoryStore


def run(coro):
    return asyncio.run(coro)


# ── Stores ────────────────────────────────────────────────────────────────────

def test_json_store_first_use_is_empty(tmp_path):
    store = JsonFileStore(tmp_path / "state.json")
    assert run(store.load("acct-1")) is None


def test_json_store_upserts_per_account(tmp_path):
    path = tmp_path / "nested" / "state.json"
    store = JsonFileStore(path)

    async def scenario():
        await store.save("acct-1", LedgerRecord(leaf_cumulative_ms=1_000, water_ml=1_412.5))
        await store.save("acct-2", LedgerRecord(leaf_cumulative_ms=2_000, water_ml=900))
        await store.save("acct-1", LedgerRecord(leaf_cumulative_ms=3_000, water_ml=1_125))
        return await store.load("acct-1"), await store.load("acct-2")

    first, second = run(scenario())
    assert first == LedgerRecord(leaf_cumulative_ms=3_000, water_ml=1_125)
    assert second == LedgerRecord(leaf_cumulative_ms=2_000, water_ml=900)
    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert set(on_disk) == {"acct-1", "acct-2"}
    assert not path.with_suffix(".tmp").exists()


def test_json_store_recovers_from_corrupt_file(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{\"acct-1\": {\"leaf_cum", encoding="utf-8")
    store = JsonFileStore(path)

    async def scenario():
        first = await store.load("acct-1")
        await store.save("acct-1", LedgerRecord(leaf_cumulative_ms=4_000, water_ml=1_300))
        return first, await store.load("acct-1")

    before, after = run(scenario())
    assert before is None
    assert after == LedgerRecord(leaf_cumulative_ms=4_000, water_ml=1_300)
    assert json.loads(path.read_text(encoding="utf-8")) == {"acct-1": after.to_dict()}


def test_memory_store_copies_records():
    store = MemoryStore()
    record = LedgerRecord(leaf_cumulative_ms=10)
    run(store.save("acct-1", record))
    record.leaf_cumulative_ms = 99
    assert run(store.load("acct-1")).leaf_cumulative_ms == 10


def test_record_defaults_to_full_tank():
    assert LedgerRecord.from_dict({}) == LedgerRecord(leaf_cumulative_ms=0, water_ml=1700)


# ── Settings ──────────────────────────────────────────────────────────────────

def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("TEA_MACHINE_NAME_PREFIX", "TeaLab")
    monkeypatch.setenv("TEA_MACHINE_ACCOUNT_ID", "kitchen")
    monkeypatch.setenv("TEA_MACHINE_STORE_PATH", str(tmp_path / "s.json"))
    monkeypatch.setenv("TEA_MACHINE_PORT", "9001")
    monkeypatch.setenv("TEA_MACHINE_SCAN_TIMEOUT", "2.5")
    monkeypatch.setenv("TEA_MACHINE_LOG_LEVEL", "debug")

    settings = Settings.from_env()
    assert settings.name_prefix == "TeaLab"
    assert settings.account_id == "kitchen"
    assert settings.store_path == tmp_path / "s.json"
    assert settings.port == 9001
    assert settings.scan_timeout == 2.5
    assert settings.log_level == "DEBUG"


def test_settings_ignore_bad_numbers(monkeypatch):
    monkeypatch.setenv("TEA_MACHINE_PORT", "not-a-port")
    monkeypatch.setenv("TEA_MACHINE_SCAN_TIMEOUT", "")
    settings = Settings.from_env()
    assert settings.port == 8000
    assert settings.scan_timeout == 10.0
