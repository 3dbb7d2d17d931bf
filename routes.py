"""
Tea Machine — Routes
Operator actions and the merged machine view.
"""

from typing import Awaitable

import structlog
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from controller import TeaMachine
from errors import ConnectError, NotConnectedError, TransportFailureError
from models import TeaType

router = APIRouter()
log = structlog.get_logger()


class SwitchRequest(BaseModel):
    on: bool


class TeaRequest(BaseModel):
    tea: TeaType


# ── Helpers ───────────────────────────────────────────────────────────────────

def get_machine(request: Request) -> TeaMachine:
    return request.app.state.machine


async def perform(action: Awaitable):
    """Await an engine action, mapping transport failures to HTTP errors."""
    try:
        return await action
    except NotConnectedError as e:
        raise HTTPException(status_code=409, detail={
            "error": "Not Connected",
            "message": "Connect to the Tea Machine first.",
            "reason": str(e),
        })
    except TransportFailureError as e:
        raise HTTPException(status_code=502, detail={
            "error": "Transport Failure",
            "message": "The command could not be written to the Tea Machine.",
            "reason": str(e),
        })


def accepted_or_refused(machine: TeaMachine, accepted: bool, action: str) -> dict:
    if not accepted:
        refusal = machine.engine.last_refusal
        log.info("teamachine.action_refused", action=action,
            reason=refusal.description if refusal else None)
        raise HTTPException(status_code=409, detail={
            "error": "Refused",
            "action": action,
            **(refusal.to_dict() if refusal else {}),
        })
    return {"accepted": True, "action": action, **machine.view()}


# ── View ──────────────────────────────────────────────────────────────────────

@router.get("/")
def machine_view(request: Request):
    """Device snapshot merged with the locally derived ledgers."""
    return get_machine(request).view()


@router.get("/notifications")
def notifications(request: Request):
    sink = get_machine(request).sink
    recent = sink.recent() if hasattr(sink, "recent") else []
    return {"notifications": [n.to_dict() for n in recent]}


# ── Connection ────────────────────────────────────────────────────────────────

@router.post("/connect")
async def connect(request: Request):
    """
    Discover and open a session.

    Returns:
        200 — connected
        503 — Bluetooth unavailable, pairing rejected or service missing
    """
    machine = get_machine(request)
    try:
        await machine.connect()
    except ConnectError as e:
        raise HTTPException(status_code=503, detail={
            "error": "Connection Failed",
            "kind": type(e).__name__,
            "message": str(e),
        })
    return machine.view()


@router.post("/disconnect")
async def disconnect(request: Request):
    machine = get_machine(request)
    await machine.disconnect()
    return machine.view()


# ── Machine commands ──────────────────────────────────────────────────────────

@router.post("/power")
async def power(body: SwitchRequest, request: Request):
    machine = get_machine(request)
    await perform(machine.engine.set_power(body.on))
    return {"accepted": True, "action": "power", "on": body.on}


@router.post("/tea")
async def tea(body: TeaRequest, request: Request):
    machine = get_machine(request)
    await perform(machine.engine.select_tea(body.tea))
    return {"accepted": True, "action": "tea", "tea": body.tea}


@router.post("/heater")
async def heater(body: SwitchRequest, request: Request):
    machine = get_machine(request)
    await perform(machine.engine.set_heater(body.on))
    return {"accepted": True, "action": "heater", "on": body.on}


# ── Brewing ───────────────────────────────────────────────────────────────────

@router.post("/brew")
async def brew(body: SwitchRequest, request: Request):
    """
    Start or stop a brew. Starting is refused (409) once the leaves are spent
    or while the machine is off. The recommended time comes from the
    successive-infusion schedule, the appliance only receives BREW:START.
    """
    machine = get_machine(request)
    if body.on:
        accepted = await perform(machine.engine.start_brew())
    else:
        accepted = await perform(machine.engine.stop_brew())
    return accepted_or_refused(machine, accepted, "brew")


@router.post("/leaves/replace")
async def replace_leaves(request: Request):
    machine = get_machine(request)
    await perform(machine.engine.replace_leaves())
    return {"accepted": True, "action": "replace_leaves", **machine.view()}


# ── Water ─────────────────────────────────────────────────────────────────────

@router.post("/dispense/{kind}")
async def dispense(kind: str, request: Request):
    machine = get_machine(request)
    actions = {
        "taste": machine.engine.dispense_taste,
        "cup": machine.engine.dispense_cup,
        "recycle": machine.engine.recycle_water,
    }
    action = actions.get(kind)
    if action is None:
        raise HTTPException(status_code=404, detail={
            "error": "Not Found",
            "message": f"Unknown dispense kind {kind!r}",
            "allowed": list(actions),
        })
    accepted = await perform(action())
    return accepted_or_refused(machine, accepted, f"dispense_{kind}")


@router.post("/water/refill")
async def refill(request: Request):
    machine = get_machine(request)
    machine.engine.mark_refilled()
    return {"accepted": True, "action": "refill", **machine.view()}
