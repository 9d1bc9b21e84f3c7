"""Physical device listing.

Real iPhones and Apple Watches attached over usbmux, reported next to the
simulators so a caller can tell a hardware UDID from a simulator UDID.
"""

import asyncio
import json
import logging
from typing import List, Optional

from models import ConnectionType, Device

from . import process

logger = logging.getLogger(__name__)


def _connection_type(raw) -> ConnectionType:
    kind = str(raw or "").upper()
    if "WIFI" in kind or "NETWORK" in kind:
        return ConnectionType.WIFI
    if "USB" in kind:
        return ConnectionType.USB
    return ConnectionType.UNKNOWN


def _device_from_usbmux_row(row: dict) -> Optional[Device]:
    """Build a Device from one `pymobiledevice3 usbmux list` JSON row."""
    udid = row.get("Identifier") or row.get("UniqueDeviceID") or row.get("UDID")
    if not udid:
        return None
    return Device(
        id=udid,
        name=row.get("DeviceName") or "iPhone",
        product_type=row.get("ProductType"),
        product_version=row.get("ProductVersion"),
        connection_type=_connection_type(row.get("ConnectionType") or "USB"),
    )


class DeviceManager:
    """Lists attached devices with pymobiledevice3, falling back to its CLI."""

    def __init__(self):
        self._devices: List[Device] = []

    @property
    def devices(self) -> List[Device]:
        """Result of the last list_devices()."""
        return self._devices

    def get_device(self, device_id: str) -> Optional[Device]:
        return next((d for d in self._devices if d.id == device_id), None)

    async def list_devices(self) -> List[Device]:
        devices = await asyncio.to_thread(self._discover_native)
        if not devices:
            devices = await self._discover_cli()
        self._devices = devices
        logger.info(f"{len(devices)} physical device(s) attached")
        return devices

    def _discover_native(self) -> List[Device]:
        """Query usbmuxd and lockdown directly. Blocking."""
        from pymobiledevice3.lockdown import create_using_usbmux
        from pymobiledevice3.usbmux import list_devices

        try:
            attached = list_devices()
        except Exception as e:
            logger.debug(f"usbmuxd not reachable: {e}")
            return []

        devices = []
        for mux in attached:
            try:
                lockdown = create_using_usbmux(serial=mux.serial)
            except Exception as e:
                logger.debug(f"Skipping {mux.serial}, lockdown failed: {e}")
                continue
            devices.append(Device(
                id=mux.serial,
                name=lockdown.display_name or "iPhone",
                product_type=lockdown.product_type,
                product_version=lockdown.product_version,
                connection_type=_connection_type(getattr(mux, "connection_type", None)),
            ))
        return devices

    async def _discover_cli(self) -> List[Device]:
        try:
            result = await process.run("pymobiledevice3", "usbmux", "list", "--no-color")
        except OSError as e:
            logger.debug(f"pymobiledevice3 CLI unavailable: {e}")
            return []
        if result.returncode != 0:
            logger.debug(f"pymobiledevice3 usbmux list failed: {result.output}")
            return []
        try:
            rows = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            logger.debug(f"Unreadable pymobiledevice3 output: {e}")
            return []
        return [d for d in map(_device_from_usbmux_row, rows) if d is not None]
