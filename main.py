"""
Tea Machine — Server
HTTP control surface for a BLE tea brewing appliance.

Usage:
    pip install -e .
    uvicorn main:app --port 8000

Then:
    curl -X POST http://localhost:8000/connect
    curl -X POST http://localhost:8000/brew -H "Content-Type: application/json" -d '{"on": true}'
"""

import logging
from contextlib import asynccontextmanager

import structlog
import uvicorn
from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from config import Settings
from controller import TeaMachine
from link import BleakLink
from notifications import LogSink
from routes import router
from store import JsonFileStore


# ── Structured logging ────────────────────────────────────────────────────────

def configure_logging(level: str = "INFO") -> None:
    numeric = logging.getLevelName(level)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
    )


log = structlog.get_logger()


def build_machine(settings: Settings) -> TeaMachine:
    return TeaMachine(
        transport=BleakLink(scan_timeout=settings.scan_timeout),
        store=JsonFileStore(settings.store_path),
        sink=LogSink(),
        account_id=settings.account_id,
        name_prefix=settings.name_prefix,
    )


# ── Middleware ────────────────────────────────────────────────────────────────

class TeaMachineMiddleware(BaseHTTPMiddleware):
    """Stamp every response with the session state."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        machine: TeaMachine = request.app.state.machine
        response.headers["X-Tea-Machine"] = machine.engine.account_id
        response.headers["X-Machine-Session"] = "open" if machine.connected else "closed"
        return response


# ── App ───────────────────────────────────────────────────────────────────────

def create_app(machine: TeaMachine | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    machine = machine or build_machine(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await machine.start()
        log.info("teamachine.startup",
            account_id=settings.account_id,
            name_prefix=settings.name_prefix,
            store_path=str(settings.store_path),
        )
        yield
        await machine.shutdown()
        log.info("teamachine.shutdown")

    app = FastAPI(
        title="Tea Machine",
        description="BLE tea brewing appliance controller with leaf and water ledgers",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.machine = machine
    app.add_middleware(TeaMachineMiddleware)
    app.include_router(router)
    return app


_settings = Settings.from_env()
configure_logging(_settings.log_level)
app = create_app(settings=_settings)


if __name__ == "__main__":
    uvicorn.run(app, host=_settings.host, port=_settings.port)
