"""
Tea Machine — Configuration
Reads TEA_MACHINE_* variables, after loading an optional .env next to this file.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from models import DEVICE_NAME_PREFIX

_ROOT = Path(__file__).resolve().parent


def load_config() -> None:
    """Idempotent. Existing environment variables win over .env values."""
    load_dotenv(_ROOT / ".env", override=False)


def get_optional(key: str, default: str = "") -> str:
    val = os.getenv(key, "").strip()
    return val if val else default


def get_optional_int(key: str, default: int) -> int:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def get_optional_float(key: str, default: float) -> float:
    raw = os.getenv(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    name_prefix: str = DEVICE_NAME_PREFIX
    account_id: str = "local"
    store_path: Path = Path("tea_machine_state.json")
    scan_timeout: float = 10.0
    host: str = "127.0.0.1"
    port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        load_config()
        return cls(
            name_prefix=get_optional("TEA_MACHINE_NAME_PREFIX", DEVICE_NAME_PREFIX),
            account_id=get_optional("TEA_MACHINE_ACCOUNT_ID", "local"),
            store_path=Path(get_optional("TEA_MACHINE_STORE_PATH", "tea_machine_state.json")),
            scan_timeout=get_optional_float("TEA_MACHINE_SCAN_TIMEOUT", 10.0),
            host=get_optional("TEA_MACHINE_HOST", "127.0.0.1"),
            port=get_optional_int("TEA_MACHINE_PORT", 8000),
            log_level=get_optional("TEA_MACHINE_LOG_LEVEL", "INFO").upper(),
        )
