"""
Tea Machine — Brewing engine
Reconciles device-pushed snapshots with the locally kept ledgers.

The appliance is the clock of record: leaf time only advances by the
positive delta of its brew_ms counter while a brew is active. Water is
tracked purely from dispense actions and refills. Notifications for
sustained conditions go through the deduper so each fires once.
"""

import asyncio
from typing import Awaitable, Callable

import structlog

from errors import NotConnectedError
from ledgers import EventDeduper, InfusionSchedule, LeafLedger, WaterLedger
from models import (
    CUP_ML,
    TASTE_ML,
    EventKind,
    LedgerRecord,
    MachineEvent,
    MachineSnapshot,
    Notification,
    Severity,
    TeaType,
    format_ms,
    profile_for,
)
from notifications import NotificationSink
from store import RecordStore

log = structlog.get_logger()

SendFn = Callable[[str], Awaitable[None]]


# ── Notification catalogue ────────────────────────────────────────────────────

DEVICE_EVENT_NOTICES: dict[MachineEvent, Notification] = {
    MachineEvent.CUP_SERVED: Notification(
        "Enjoy your tea! ☕", "Your tea is ready from the Tea Machine"),
    MachineEvent.LEAF_REPLACE_REQUIRED: Notification(
        "Leaf Limit Reached", "Replace leaves to continue brewing", Severity.WARNING),
    MachineEvent.LEAVES_RESET: Notification(
        "Leaves Replaced", "Leaves replaced. Counters reset."),
}

WATER_LOW_NOTICE = Notification(
    "Water Low", "Water level at or below 1000ml. Please refill.", Severity.WARNING)
REFILLED_NOTICE = Notification("Water Refilled", "Water level reset to 1.7L")
BREW_NEEDS_LEAVES = Notification("Cannot Brew", "Replace leaves first.", Severity.WARNING)
BREW_NEEDS_POWER = Notification("Cannot Brew", "Turn the machine on first.", Severity.WARNING)
DISPENSE_NEEDS_POWER = Notification(
    "Cannot Dispense", "Turn the machine on first.", Severity.WARNING)
DISPENSE_NEEDS_WATER = Notification(
    "Cannot Dispense", "Water level at or below 1000ml. Refill the tank first.", Severity.WARNING)


def leaf_limit_notice(max_ms: int) -> Notification:
    return Notification(
        "Leaf Limit Reached",
        f"Maximum steep time of {format_ms(max_ms)} reached. Replace leaves for next brew.",
        Severity.WARNING,
    )


def brew_started_notice(brew_number: int, target_ms: int) -> Notification:
    return Notification(f"Brew {brew_number} Started", f"Recommended time: {format_ms(target_ms)}")


# ── Engine ────────────────────────────────────────────────────────────────────

class BrewingEngine:
    def __init__(self, send: SendFn, store: RecordStore, sink: NotificationSink,
                 account_id: str, is_connected: Callable[[], bool] = lambda: True):
        self._send = send
        self._store = store
        self._sink = sink
        self._is_connected = is_connected
        self.account_id = account_id

        self.schedule = InfusionSchedule()
        self.leaf = LeafLedger()
        self.water = WaterLedger()
        self.deduper = EventDeduper()

        self.snapshot: MachineSnapshot | None = None
        self.refill_brew_reminder = False
        self.last_refusal: Notification | None = None
        self._was_brew_active = False
        self._last_elapsed_ms = 0
        self._leaf_exhausted = False
        self._pending_saves: set[asyncio.Task] = set()

    # ── Derived state ─────────────────────────────────────────────────────────

    @property
    def tea_type(self) -> TeaType:
        return self.snapshot.tea_type if self.snapshot else TeaType.BLACK

    @property
    def profile(self):
        return profile_for(self.tea_type)

    @property
    def brew_active(self) -> bool:
        return self.snapshot is not None and self.snapshot.brew_active

    @property
    def system_on(self) -> bool:
        return self.snapshot is not None and self.snapshot.is_on

    @property
    def leaf_limit_reached(self) -> bool:
        return self.leaf.is_exhausted(self.profile)

    def next_brew_time_ms(self) -> int:
        return self.schedule.next_target_ms(self.profile)

    # ── Persistence ───────────────────────────────────────────────────────────

    def record(self) -> LedgerRecord:
        return LedgerRecord(leaf_cumulative_ms=self.leaf.cumulative_ms,
                            water_ml=self.water.remaining_ml)

    async def load(self) -> None:
        try:
            record = await self._store.load(self.account_id)
        except Exception as e:
            log.error("teamachine.load_failed", account_id=self.account_id, error=str(e))
            return
        if record is None:
            log.info("teamachine.ledger_fresh", account_id=self.account_id)
            return

        self.leaf = LeafLedger(record.leaf_cumulative_ms)
        self.water = WaterLedger(record.water_ml)
        self._leaf_exhausted = self.leaf_limit_reached
        log.info("teamachine.ledger_loaded", account_id=self.account_id, **record.to_dict())
        if self.water.is_low and self.deduper.surface(EventKind.WATER_LOW):
            self._notify(WATER_LOW_NOTICE)

    def _persist(self) -> None:
        task = asyncio.get_running_loop().create_task(self._save())
        self._pending_saves.add(task)
        task.add_done_callback(self._pending_saves.discard)

    async def _save(self) -> None:
        record = self.record()
        try:
            await self._store.save(self.account_id, record)
        except Exception as e:
            log.error("teamachine.save_failed", account_id=self.account_id, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight saves."""
        while self._pending_saves:
            await asyncio.gather(*self._pending_saves)

    def _notify(self, notification: Notification) -> None:
        self._sink.notify(notification)

    def _refuse(self, notification: Notification) -> None:
        self.last_refusal = notification
        self._notify(notification)

    # ── Snapshot reconciliation ───────────────────────────────────────────────

    def apply_snapshot(self, snapshot: MachineSnapshot) -> None:
        self.snapshot = snapshot
        active = snapshot.brew_active

        if active and not self._was_brew_active:
            self._begin_brew()
        self._was_brew_active = active

        if active:
            delta = max(0, snapshot.brew_elapsed_ms - self._last_elapsed_ms)
            self._last_elapsed_ms = snapshot.brew_elapsed_ms
            if delta:
                self.leaf.accrue(delta)
                self._persist()
        else:
            self._last_elapsed_ms = 0

        self._check_leaf_limit()
        self._surface_device_event(snapshot.last_event)

    def _begin_brew(self) -> None:
        self.refill_brew_reminder = False
        target = self.schedule.begin_brew(self.profile)
        log.info("teamachine.brew_detected",
            brew_count=self.schedule.brew_count,
            target_ms=target,
            tea=self.tea_type,
        )
        self._notify(brew_started_notice(self.schedule.brew_count, target))

    def _check_leaf_limit(self) -> None:
        exhausted = self.leaf_limit_reached
        if exhausted and not self._leaf_exhausted:
            log.warning("teamachine.leaf_limit_reached",
                cumulative_ms=self.leaf.cumulative_ms,
                max_ms=self.profile.max_steep_ms,
            )
            if self.deduper.surface(EventKind.LEAF_LIMIT_LOCAL):
                self._notify(leaf_limit_notice(self.profile.max_steep_ms))
        self._leaf_exhausted = exhausted

    def _surface_device_event(self, event: MachineEvent) -> None:
        if event == MachineEvent.NONE:
            self.deduper.clear()
            return
        if self.deduper.surface(EventKind(event.value)):
            self._notify(DEVICE_EVENT_NOTICES[event])

    def detach(self) -> None:
        """Link gone: forget the snapshot, keep the ledgers."""
        self.snapshot = None

    # ── Brewing ───────────────────────────────────────────────────────────────

    async def start_brew(self) -> bool:
        if self.leaf_limit_reached:
            log.info("teamachine.brew_refused", reason="leaf_limit",
                cumulative_ms=self.leaf.cumulative_ms)
            self._refuse(BREW_NEEDS_LEAVES)
            return False
        if not self.system_on:
            log.info("teamachine.brew_refused", reason="power_off")
            self._refuse(BREW_NEEDS_POWER)
            return False
        await self._send("BREW:START")
        return True

    async def stop_brew(self) -> bool:
        await self._send("BREW:STOP")
        return True

    async def replace_leaves(self) -> None:
        if not self._is_connected():
            raise NotConnectedError("replace leaves requires an open session")
        self.leaf.reset()
        self.schedule.reset()
        self.deduper.clear()
        self._leaf_exhausted = False
        self._persist()
        log.info("teamachine.leaves_replaced", account_id=self.account_id)
        await self._send("LEAVES:REPLACED")

    # ── Water ─────────────────────────────────────────────────────────────────

    async def dispense_taste(self) -> bool:
        return await self._dispense("DISPENSE:TASTE", TASTE_ML)

    async def dispense_cup(self) -> bool:
        return await self._dispense("DISPENSE:CUP", CUP_ML)

    async def recycle_water(self) -> bool:
        return await self._dispense("DISPENSE:TASTE", TASTE_ML)

    async def _dispense(self, command: str, volume_ml: float) -> bool:
        if not self.system_on:
            log.info("teamachine.dispense_refused", reason="power_off", command=command)
            self._refuse(DISPENSE_NEEDS_POWER)
            return False
        if not self.water.can_dispense():
            log.info("teamachine.dispense_refused", reason="water_low",
                remaining_ml=self.water.remaining_ml, command=command)
            self._refuse(DISPENSE_NEEDS_WATER)
            return False

        await self._send(command)
        crossed = self.water.draw(volume_ml)
        self._persist()
        log.info("teamachine.water_drawn", volume_ml=volume_ml,
            remaining_ml=self.water.remaining_ml)
        if crossed and self.deduper.surface(EventKind.WATER_LOW):
            self._notify(WATER_LOW_NOTICE)
        return True

    def mark_refilled(self) -> None:
        self.water.refill()
        self.deduper.clear(EventKind.WATER_LOW)
        self.refill_brew_reminder = True
        self._persist()
        log.info("teamachine.water_refilled", remaining_ml=self.water.remaining_ml)
        self._notify(REFILLED_NOTICE)

    # ── Machine commands ──────────────────────────────────────────────────────

    async def set_power(self, on: bool) -> None:
        await self._send("SYS:ON" if on else "SYS:OFF")

    async def select_tea(self, tea: TeaType) -> None:
        await self._send(f"SET:TEA={TeaType(tea).value}")

    async def set_heater(self, on: bool) -> None:
        await self._send("HEAT:START" if on else "HEAT:STOP")

    # ── Presentation ──────────────────────────────────────────────────────────

    def brew_progress_pct(self) -> float:
        if self.snapshot is None:
            return 0.0
        target = self.schedule.current_target_ms or self.profile.t0_ms
        return min(100.0, self.snapshot.brew_elapsed_ms / target * 100)

    def view(self) -> dict:
        profile = self.profile
        return {
            "machine": self.snapshot.to_dict() if self.snapshot else None,
            "tea_type": self.tea_type,
            "target_temp": profile.target_temp,
            "brew": {
                "active": self.brew_active,
                "count": self.schedule.brew_count,
                "current_target_ms": self.schedule.current_target_ms,
                "next_target_ms": self.next_brew_time_ms(),
                "progress_pct": self.brew_progress_pct(),
                "t0_ms": profile.t0_ms,
                "k": profile.k,
            },
            "leaf": {
                "cumulative_ms": self.leaf.cumulative_ms,
                "max_ms": profile.max_steep_ms,
                "remaining_pct": self.leaf.remaining_pct(profile),
                "limit_reached": self.leaf_limit_reached,
                "display": f"{format_ms(self.leaf.cumulative_ms)} / {format_ms(profile.max_steep_ms)}",
            },
            "water": {
                "remaining_ml": self.water.remaining_ml,
                "tank_pct": self.water.tank_pct,
                "low": self.water.is_low,
                "cups_left": self.water.cups_left(),
            },
            "refill_brew_reminder": self.refill_brew_reminder,
        }
