"""
Tea Machine — Data Models
Device snapshot, tea profiles, notifications and the persisted ledger record.
"""

import json
import math
from enum import Enum
from dataclasses import dataclass

from errors import SnapshotDecodeError


# ── BLE identity ──────────────────────────────────────────────────────────────

DEVICE_NAME_PREFIX = "TeaMachine"
SERVICE_UUID = "0000a000-0000-1000-8000-00805f9b34fb"
COMMAND_CHAR_UUID = "0000a001-0000-1000-8000-00805f9b34fb"
STATE_CHAR_UUID = "0000a002-0000-1000-8000-00805f9b34fb"


# ── Enumerations ──────────────────────────────────────────────────────────────

class Power(str, Enum):
    ON = "ON"
    OFF = "OFF"


class TeaType(str, Enum):
    BLACK = "BLACK"
    GREEN = "GREEN"


class BrewPhase(str, Enum):
    IDLE = "IDLE"
    LOWERING = "LOWERING"
    SOAKING = "SOAKING"
    RAISING = "RAISING"
    DONE = "DONE"


ACTIVE_PHASES = frozenset({BrewPhase.LOWERING, BrewPhase.SOAKING, BrewPhase.RAISING})


class DispenseMode(str, Enum):
    NONE = "NONE"
    TASTE = "TASTE"
    CUP = "CUP"


class MachineEvent(str, Enum):
    NONE = "NONE"
    CUP_SERVED = "CUP_SERVED"
    LEAF_REPLACE_REQUIRED = "LEAF_REPLACE_REQUIRED"
    LEAVES_RESET = "LEAVES_RESET"


class EventKind(str, Enum):
    """One-shot conditions the deduper tracks. Device events plus local ones."""
    CUP_SERVED = "CUP_SERVED"
    LEAF_REPLACE_REQUIRED = "LEAF_REPLACE_REQUIRED"
    LEAVES_RESET = "LEAVES_RESET"
    LEAF_LIMIT_LOCAL = "LEAF_LIMIT_LOCAL"
    WATER_LOW = "WATER_LOW"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"


# ── Tea profiles ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TeaProfile:
    t0_ms: int
    k: float
    max_steep_ms: int
    target_temp: str


TEA_PROFILES: dict[TeaType, TeaProfile] = {
    TeaType.BLACK: TeaProfile(t0_ms=300_000, k=0.7, max_steep_ms=720_000, target_temp="96-98°C"),
    TeaType.GREEN: TeaProfile(t0_ms=180_000, k=0.8, max_steep_ms=540_000, target_temp="82-84°C"),
}


def profile_for(tea: TeaType) -> TeaProfile:
    return TEA_PROFILES[tea]


def max_steep_ms(tea: TeaType) -> int:
    return TEA_PROFILES[tea].max_steep_ms


# ── Water ─────────────────────────────────────────────────────────────────────

TANK_CAPACITY_ML = 1700
LOW_WATER_ML = 1000
TASTE_ML = 115
CUP_ML = 287.5


# ── Machine snapshot ──────────────────────────────────────────────────────────

_REQUIRED_KEYS = (
    "sys", "tea", "T", "heater", "heating", "brew", "brew_ms",
    "brew_total", "pump", "dispense", "needs_refill", "event",
)


def _flag(raw: dict, key: str) -> bool:
    value = raw[key]
    if isinstance(value, bool):
        return value
    if value in (0, 1):
        return bool(value)
    raise SnapshotDecodeError(f"{key} must be 0 or 1, got {value!r}")


def _enum(raw: dict, key: str, enum_cls):
    try:
        return enum_cls(raw[key])
    except ValueError:
        raise SnapshotDecodeError(f"{key} has unknown value {raw[key]!r}") from None


def _finite(raw: dict, key: str):
    value = raw.get(key, 0)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise SnapshotDecodeError(f"{key} must be a number, got {value!r}")
    try:
        finite = math.isfinite(value)
    except OverflowError:
        finite = False
    if not finite:
        raise SnapshotDecodeError(f"{key} must be finite, got {value!r}")
    return value


def _millis(raw: dict, key: str) -> int:
    value = _finite(raw, key)
    if value < 0:
        raise SnapshotDecodeError(f"{key} must not be negative, got {value!r}")
    return int(value)


def _number(raw: dict, key: str) -> float:
    return float(_finite(raw, key))


@dataclass(frozen=True)
class MachineSnapshot:
    """
    Full state record pushed by the appliance.
    Always replaces the previous snapshot, fields are never merged.
    The device_* telemetry is informational; the engine keeps its own ledgers.
    """
    power: Power
    tea_type: TeaType
    temperature_c: float
    heater_on: bool
    is_heating: bool
    brew_phase: BrewPhase
    brew_elapsed_ms: int
    brew_total_ms: int
    pump_on: bool
    dispense_mode: DispenseMode
    needs_refill: bool
    last_event: MachineEvent
    device_water_ml: float = 0.0
    device_tank_pct: float = 0.0
    device_leaf_cumulative_ms: int = 0
    device_leaf_max_ms: int = 0
    device_leaf_ok: bool = True
    device_next_soak_ms: int = 0

    @property
    def brew_active(self) -> bool:
        return self.brew_phase in ACTIVE_PHASES

    @property
    def is_on(self) -> bool:
        return self.power == Power.ON

    @classmethod
    def from_dict(cls, raw: dict) -> "MachineSnapshot":
        if not isinstance(raw, dict):
            raise SnapshotDecodeError(f"snapshot must be an object, got {type(raw).__name__}")
        missing = [k for k in _REQUIRED_KEYS if k not in raw]
        if missing:
            raise SnapshotDecodeError(f"snapshot is missing {', '.join(missing)}")

        return cls(
            power=_enum(raw, "sys", Power),
            tea_type=_enum(raw, "tea", TeaType),
            temperature_c=_number(raw, "T"),
            heater_on=_flag(raw, "heater"),
            is_heating=_flag(raw, "heating"),
            brew_phase=_enum(raw, "brew", BrewPhase),
            brew_elapsed_ms=_millis(raw, "brew_ms"),
            brew_total_ms=_millis(raw, "brew_total"),
            pump_on=_flag(raw, "pump"),
            dispense_mode=_enum(raw, "dispense", DispenseMode),
            needs_refill=_flag(raw, "needs_refill"),
            last_event=_enum(raw, "event", MachineEvent),
            device_water_ml=_number(raw, "water_ml"),
            device_tank_pct=_number(raw, "tank_pct"),
            device_leaf_cumulative_ms=_millis(raw, "leaf_tcum_ms"),
            device_leaf_max_ms=_millis(raw, "leaf_tmax_ms"),
            device_leaf_ok=_flag(raw, "leaf_ok") if "leaf_ok" in raw else True,
            device_next_soak_ms=_millis(raw, "next_soak_ms"),
        )

    @classmethod
    def from_json(cls, text: str) -> "MachineSnapshot":
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise SnapshotDecodeError(f"snapshot is not valid JSON: {e}") from e
        return cls.from_dict(raw)

    def to_dict(self) -> dict:
        return {
            "power": self.power,
            "tea_type": self.tea_type,
            "temperature_c": self.temperature_c,
            "heater_on": self.heater_on,
            "is_heating": self.is_heating,
            "brew_phase": self.brew_phase,
            "brew_elapsed_ms": self.brew_elapsed_ms,
            "brew_total_ms": self.brew_total_ms,
            "pump_on": self.pump_on,
            "dispense_mode": self.dispense_mode,
            "needs_refill": self.needs_refill,
            "last_event": self.last_event,
            "device": {
                "water_ml": self.device_water_ml,
                "tank_pct": self.device_tank_pct,
                "leaf_cumulative_ms": self.device_leaf_cumulative_ms,
                "leaf_max_ms": self.device_leaf_max_ms,
                "leaf_ok": self.device_leaf_ok,
                "next_soak_ms": self.device_next_soak_ms,
            },
        }


# ── Notifications ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    severity: Severity = Severity.INFO

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "description": self.description,
            "severity": self.severity,
        }


# ── Persisted ledger record ───────────────────────────────────────────────────

@dataclass
class LedgerRecord:
    leaf_cumulative_ms: int = 0
    water_ml: float = TANK_CAPACITY_ML

    def to_dict(self) -> dict:
        return {
            "leaf_cumulative_ms": self.leaf_cumulative_ms,
            "water_ml": self.water_ml,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "LedgerRecord":
        return cls(
            leaf_cumulative_ms=int(raw.get("leaf_cumulative_ms", 0)),
            water_ml=float(raw.get("water_ml", TANK_CAPACITY_ML)),
        )


def format_ms(ms: int) -> str:
    """Render milliseconds as m:ss."""
    seconds = int(ms) // 1000
    return f"{seconds // 60}:{seconds % 60:02d}"
