"""
Tea Machine — Ledgers
Client-side accumulators the appliance does not track:
successive-infusion schedule, leaf steep time, water volume and the
one-shot event deduper.
"""

import math

from models import (
    CUP_ML,
    LOW_WATER_ML,
    TANK_CAPACITY_ML,
    EventKind,
    TeaProfile,
)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def successive_target_ms(profile: TeaProfile, brew_number: int) -> int:
    """Closed form of the infusion law: t0 * k^(n-1)."""
    if brew_number <= 1:
        return profile.t0_ms
    return round_half_up(profile.t0_ms * profile.k ** (brew_number - 1))


# ── Successive infusion schedule ──────────────────────────────────────────────

class InfusionSchedule:
    def __init__(self):
        self.brew_count = 0
        self.current_target_ms = 0

    def begin_brew(self, profile: TeaProfile) -> int:
        """Register a new brew and return its recommended duration."""
        self.brew_count += 1
        self.current_target_ms = successive_target_ms(profile, self.brew_count)
        return self.current_target_ms

    def next_target_ms(self, profile: TeaProfile) -> int:
        """Recommended duration for the brew that has not started yet."""
        if self.brew_count == 0:
            return profile.t0_ms
        return round_half_up(self.current_target_ms * profile.k)

    def reset(self) -> None:
        self.brew_count = 0
        self.current_target_ms = 0


# ── Leaf usage ────────────────────────────────────────────────────────────────

class LeafLedger:
    def __init__(self, cumulative_ms: int = 0):
        self.cumulative_ms = max(0, int(cumulative_ms))

    def accrue(self, delta_ms: int) -> int:
        if delta_ms > 0:
            self.cumulative_ms += delta_ms
        return self.cumulative_ms

    def is_exhausted(self, profile: TeaProfile) -> bool:
        return self.cumulative_ms >= profile.max_steep_ms

    def remaining_pct(self, profile: TeaProfile) -> float:
        left = (profile.max_steep_ms - self.cumulative_ms) / profile.max_steep_ms
        return max(0.0, left * 100)

    def reset(self) -> None:
        self.cumulative_ms = 0


# ── Water ─────────────────────────────────────────────────────────────────────

class WaterLedger:
    """
    Local tank gauge. Only dispense actions and refills move it;
    the appliance's own water telemetry is never read back into it.
    """

    def __init__(self, remaining_ml: float = TANK_CAPACITY_ML,
                 capacity_ml: float = TANK_CAPACITY_ML,
                 low_ml: float = LOW_WATER_ML):
        self.capacity_ml = capacity_ml
        self.low_ml = low_ml
        self.remaining_ml = min(capacity_ml, max(0.0, float(remaining_ml)))

    @property
    def is_low(self) -> bool:
        return self.remaining_ml <= self.low_ml

    @property
    def tank_pct(self) -> float:
        return self.remaining_ml / self.capacity_ml * 100

    def can_dispense(self) -> bool:
        return not self.is_low

    def draw(self, volume_ml: float) -> bool:
        """
        Deduct a draw, floored at zero.
        Returns True when this draw took the level across the low-water line.
        """
        was_low = self.is_low
        self.remaining_ml = max(0.0, self.remaining_ml - volume_ml)
        return self.is_low and not was_low

    def refill(self) -> None:
        self.remaining_ml = float(self.capacity_ml)

    def cups_left(self) -> int:
        """Full cups still allowed before the low-water cutoff refuses them."""
        count, level = 0, self.remaining_ml
        while level > self.low_ml:
            level -= CUP_ML
            count += 1
        return count


# ── Event deduper ─────────────────────────────────────────────────────────────

class EventDeduper:
    """
    Remembers the last surfaced one-shot kind so a sustained condition
    yields a single notification.
    """

    def __init__(self):
        self.last_kind: EventKind | None = None

    def surface(self, kind: EventKind) -> bool:
        if kind == self.last_kind:
            return False
        self.last_kind = kind
        return True

    def clear(self, kind: EventKind | None = None) -> None:
        """Re-arm. With a kind, only if that kind is the one remembered."""
        if kind is None or self.last_kind == kind:
            self.last_kind = None
