"""
Tea Machine — Device session
One logical BLE connection to one appliance at a time.
Commands go out as newline-terminated UTF-8 text written without response;
state comes back as JSON snapshots on the notify characteristic.
"""

from typing import Callable, Protocol

import structlog

from errors import (
    ConnectError,
    NotConnectedError,
    PairingRejectedError,
    ServiceMissingError,
    SnapshotDecodeError,
    TransportFailureError,
)
from models import (
    COMMAND_CHAR_UUID,
    DEVICE_NAME_PREFIX,
    SERVICE_UUID,
    STATE_CHAR_UUID,
    MachineSnapshot,
)

log = structlog.get_logger()


class LinkTransport(Protocol):
    """
    A paired link. Implementations translate their own failures into
    ConnectError subclasses from connect(); write() may raise anything.
    """

    @property
    def is_connected(self) -> bool: ...

    async def connect(self, name_prefix: str, service_uuid: str,
                      on_lost: Callable[[], None]) -> None: ...

    def has_characteristic(self, char_uuid: str) -> bool: ...

    async def subscribe(self, char_uuid: str, handler: Callable[[bytes], None]) -> None: ...

    async def write(self, char_uuid: str, data: bytes) -> None: ...

    async def disconnect(self) -> None: ...


def encode_command(command: str) -> bytes:
    return (command + "\n").encode("utf-8")


def decode_snapshot(payload: bytes) -> MachineSnapshot:
    try:
        text = bytes(payload).decode("utf-8")
    except UnicodeDecodeError as e:
        raise SnapshotDecodeError(f"snapshot is not UTF-8: {e}") from e
    return MachineSnapshot.from_json(text)


class DeviceSession:
    def __init__(self, transport: LinkTransport, name_prefix: str = DEVICE_NAME_PREFIX):
        self._transport = transport
        self._name_prefix = name_prefix
        self._open = False
        self._on_snapshot: Callable[[MachineSnapshot], None] | None = None
        self._on_lost: Callable[[], None] | None = None
        self.snapshot: MachineSnapshot | None = None
        self.dropped_payloads = 0

    @property
    def is_open(self) -> bool:
        return self._open

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def open(self, on_snapshot: Callable[[MachineSnapshot], None],
                   on_lost: Callable[[], None]) -> None:
        """
        Discover, connect and subscribe.

        Raises:
            BluetoothUnavailableError, PairingRejectedError, ServiceMissingError
        """
        if self._open:
            log.info("teamachine.session_replaced")
            await self.close()

        self.snapshot = None
        try:
            await self._transport.connect(self._name_prefix, SERVICE_UUID, self._handle_lost)
        except ConnectError as e:
            log.warning("teamachine.connect_failed", error=str(e), kind=type(e).__name__)
            raise
        except Exception as e:
            log.warning("teamachine.connect_failed", error=str(e), kind=type(e).__name__)
            await self._release()
            raise PairingRejectedError(str(e)) from e
        self._on_snapshot = on_snapshot
        try:
            for char_uuid in (COMMAND_CHAR_UUID, STATE_CHAR_UUID):
                if not self._transport.has_characteristic(char_uuid):
                    raise ServiceMissingError(f"characteristic {char_uuid} not found")
            await self._transport.subscribe(STATE_CHAR_UUID, self._handle_payload)
        except ConnectError:
            self._on_snapshot = None
            await self._release()
            raise
        except Exception as e:
            self._on_snapshot = None
            await self._release()
            raise ServiceMissingError(f"could not subscribe to state: {e}") from e

        self._on_lost = on_lost
        self._open = True
        log.info("teamachine.session_open", name_prefix=self._name_prefix)

    async def close(self) -> None:
        """Idempotent. Fires on_lost once per opened session."""
        if not self._open:
            return
        self._open = False
        await self._release()
        log.info("teamachine.session_closed", reason="close")
        self._fire_lost()

    async def _release(self) -> None:
        if not self._transport.is_connected:
            return
        try:
            await self._transport.disconnect()
        except Exception as e:
            log.warning("teamachine.disconnect_failed", error=str(e))

    def _handle_lost(self) -> None:
        if not self._open:
            return
        self._open = False
        log.warning("teamachine.session_closed", reason="link_lost")
        self._fire_lost()

    def _fire_lost(self) -> None:
        callback, self._on_lost = self._on_lost, None
        self._on_snapshot = None
        if callback is not None:
            callback()

    # ── Commands ──────────────────────────────────────────────────────────────

    async def send(self, command: str) -> None:
        """
        Write one command. Fire-and-forget: nothing is acknowledged,
        the outcome only shows up in later snapshots.
        """
        if not self._open:
            raise NotConnectedError("no open session")
        try:
            await self._transport.write(COMMAND_CHAR_UUID, encode_command(command))
        except Exception as e:
            log.error("teamachine.send_failed", command=command, error=str(e))
            raise TransportFailureError(str(e)) from e
        log.info("teamachine.command_sent", command=command)

    # ── Notifications ─────────────────────────────────────────────────────────

    def _handle_payload(self, payload: bytes) -> None:
        if self._on_snapshot is None:
            return
        try:
            snapshot = decode_snapshot(payload)
        except SnapshotDecodeError as e:
            self.dropped_payloads += 1
            log.warning("teamachine.snapshot_dropped", error=str(e), size=len(payload))
            return

        self.snapshot = snapshot
        self._on_snapshot(snapshot)
