"""
Tea Machine — Ledger persistence
Key/value record store keyed by account id. save() is an upsert.
"""

import asyncio
import json
from pathlib import Path
from typing import Protocol

import structlog

from models import LedgerRecord

log = structlog.get_logger()


class RecordStore(Protocol):
    async def load(self, account_id: str) -> LedgerRecord | None: ...

    async def save(self, account_id: str, record: LedgerRecord) -> None: ...


class MemoryStore:
    def __init__(self):
        self.records: dict[str, LedgerRecord] = {}

    async def load(self, account_id: str) -> LedgerRecord | None:
        record = self.records.get(account_id)
        return LedgerRecord(**record.to_dict()) if record else None

    async def save(self, account_id: str, record: LedgerRecord) -> None:
        self.records[account_id] = LedgerRecord(**record.to_dict())


class JsonFileStore:
    """
    One JSON document mapping account id -> record.
    Writes go through a temp file and replace() the original.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read_all(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as f:
            text = f.read()
        if not text.strip():
            return {}
        try:
            records = json.loads(text)
        except json.JSONDecodeError as e:
            log.warning("teamachine.store_unreadable", path=str(self.path), error=str(e))
            return {}
        if not isinstance(records, dict):
            log.warning("teamachine.store_unreadable", path=str(self.path), error="not an object")
            return {}
        return records

    def _write_all(self, records: dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with tmp.open("w", encoding="utf-8") as f:
            json.dump(records, f, indent=2)
        tmp.replace(self.path)

    def _upsert(self, account_id: str, record: LedgerRecord) -> None:
        records = self._read_all()
        records[account_id] = record.to_dict()
        self._write_all(records)

    async def load(self, account_id: str) -> LedgerRecord | None:
        async with self._lock:
            records = await asyncio.to_thread(self._read_all)
        raw = records.get(account_id)
        return LedgerRecord.from_dict(raw) if raw is not None else None

    async def save(self, account_id: str, record: LedgerRecord) -> None:
        async with self._lock:
            await asyncio.to_thread(self._upsert, account_id, record)
