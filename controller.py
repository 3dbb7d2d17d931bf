"""
Tea Machine — Controller
Owns the session, the engine and the inbound snapshot channel.
One instance per process; the HTTP layer reaches it through app.state.
"""

import asyncio

import structlog

from engine import BrewingEngine
from errors import BluetoothUnavailableError, ConnectError
from models import DEVICE_NAME_PREFIX, MachineSnapshot, Notification, Severity
from notifications import NotificationSink
from session import DeviceSession, LinkTransport
from store import RecordStore

log = structlog.get_logger()

CONNECTED_NOTICE = Notification("Connected", "Successfully connected to Tea Machine")
DISCONNECTED_NOTICE = Notification("Disconnected", "Disconnected from Tea Machine")
UNAVAILABLE_NOTICE = Notification(
    "Bluetooth Not Available",
    "This host has no usable Bluetooth adapter.",
    Severity.WARNING,
)
CONNECT_FAILED_NOTICE = Notification(
    "Connection Failed",
    "Failed to connect to Tea Machine. Please try again.",
    Severity.WARNING,
)


class TeaMachine:
    def __init__(self, transport: LinkTransport, store: RecordStore, sink: NotificationSink,
                 account_id: str, name_prefix: str = DEVICE_NAME_PREFIX):
        self.sink = sink
        self.session = DeviceSession(transport, name_prefix)
        self.engine = BrewingEngine(
            send=self.session.send,
            store=store,
            sink=sink,
            account_id=account_id,
            is_connected=lambda: self.session.is_open,
        )
        self._inbox: asyncio.Queue | None = None
        self._consumer: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self.session.is_open

    async def start(self) -> None:
        await self.engine.load()

    async def connect(self) -> None:
        """
        Open the session and start the consumer loop.

        Raises:
            ConnectError: after notifying the sink.
        """
        inbox: asyncio.Queue = asyncio.Queue()
        try:
            await self.session.open(on_snapshot=inbox.put_nowait, on_lost=self._on_lost)
        except BluetoothUnavailableError:
            self.sink.notify(UNAVAILABLE_NOTICE)
            raise
        except ConnectError:
            self.sink.notify(CONNECT_FAILED_NOTICE)
            raise

        previous = self._consumer
        self._inbox = inbox
        self._consumer = asyncio.get_running_loop().create_task(self._consume(inbox))
        self.sink.notify(CONNECTED_NOTICE)
        if previous is not None:
            await previous

    def _on_lost(self) -> None:
        # Both close() and link loss end up here, exactly once per session.
        if self._inbox is not None:
            self._inbox.put_nowait(None)
        self.sink.notify(DISCONNECTED_NOTICE)

    async def _consume(self, inbox: asyncio.Queue) -> None:
        while True:
            snapshot: MachineSnapshot | None = await inbox.get()
            try:
                if snapshot is None:
                    self.engine.detach()
                    log.info("teamachine.consumer_stopped")
                    return
                self.engine.apply_snapshot(snapshot)
            except Exception as e:
                log.error("teamachine.snapshot_failed", error=str(e))
            finally:
                inbox.task_done()

    async def settle(self) -> None:
        """Wait until every queued snapshot has been applied."""
        if self._inbox is not None:
            await self._inbox.join()

    async def disconnect(self) -> None:
        await self.session.close()
        if self._consumer is not None:
            await self._consumer
            self._consumer = None

    async def shutdown(self) -> None:
        await self.disconnect()
        await self.engine.drain()

    def view(self) -> dict:
        return {"connected": self.connected, **self.engine.view()}
