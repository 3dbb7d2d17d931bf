"""
Tea Machine — BLE link
LinkTransport over bleak. Translates bleak failures into ConnectError types.
"""

import asyncio
from typing import Callable

import structlog
from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from errors import BluetoothUnavailableError, PairingRejectedError, ServiceMissingError

log = structlog.get_logger()


class BleakLink:
    def __init__(self, scan_timeout: float = 10.0):
        self.scan_timeout = scan_timeout
        self._client: BleakClient | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def connect(self, name_prefix: str, service_uuid: str,
                      on_lost: Callable[[], None]) -> None:
        try:
            device = await BleakScanner.find_device_by_filter(
                lambda d, adv: bool(d.name and d.name.startswith(name_prefix)),
                timeout=self.scan_timeout,
            )
        except (BleakError, OSError) as e:
            raise BluetoothUnavailableError(f"Bluetooth scan failed: {e}") from e

        if device is None:
            raise PairingRejectedError(f"no device named {name_prefix}* found")

        log.info("teamachine.device_found", name=device.name, address=device.address)
        client = BleakClient(device, disconnected_callback=lambda _client: on_lost())
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise PairingRejectedError(f"connection to {device.address} refused: {e}") from e

        self._client = client
        if client.services.get_service(service_uuid) is None:
            await self.disconnect()
            raise ServiceMissingError(f"service {service_uuid} not offered by {device.address}")

    def has_characteristic(self, char_uuid: str) -> bool:
        if self._client is None:
            return False
        return self._client.services.get_characteristic(char_uuid) is not None

    async def subscribe(self, char_uuid: str, handler: Callable[[bytes], None]) -> None:
        await self._client.start_notify(char_uuid, lambda _sender, data: handler(bytes(data)))

    async def write(self, char_uuid: str, data: bytes) -> None:
        if self._client is None:
            raise BleakError("not connected")
        await self._client.write_gatt_char(char_uuid, data, response=False)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None and client.is_connected:
            await client.disconnect()
