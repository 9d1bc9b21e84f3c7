"""Simulator catalog.

Merges the simulators recorded on disk (one device.plist per simulator)
with the simctl listing and the device types/runtimes each Xcode knows
about, producing iOS and watchOS handles bucketed by OS version.
"""

import asyncio
import logging
import os
import plistlib
import re
from typing import Callable, Dict, Iterable, List, Optional, Union

from models import (
    DeviceRecord, DeviceTypeInfo, IosSimulator, RuntimeInfo, SimctlListing,
    SimulatorHandle, SimulatorRegistry, SimulatorType, WatchSimulator,
)

from . import version
from .cache import DetectionCache, detection_cache
from .simctl import SimctlGateway
from .xcode import Xcode, newest, read_plist, runtime_platform

logger = logging.getLogger(__name__)

DEFAULT_DEVICES_DIR = "~/Library/Developer/CoreSimulator/Devices"
DEFAULT_LOGS_DIR = "~/Library/Logs/CoreSimulator"

# Xcode 6.2 - 6.4 simulate watchOS 1.0 as an external display of the iOS
# Simulator. These watches have no simctl entry; the UDIDs are fixed.
FAKE_WATCH_XCODE_RANGE = ">=6.2 <7.0"
FAKE_WATCH_SIMULATORS = (
    {
        "udid": "58045222-F0C1-41F7-A4BD-E2EDCFBCF5B9",
        "name": "Apple Watch - 38mm",
        "model": "Watch1,1",
        "device_type": "com.apple.CoreSimulator.SimDeviceType.Apple-Watch-38mm",
    },
    {
        "udid": "D5C1DA2F-7A74-49C8-809A-906E554021B0",
        "name": "Apple Watch - 42mm",
        "model": "Watch1,2",
        "device_type": "com.apple.CoreSimulator.SimDeviceType.Apple-Watch-42mm",
    },
)
FAKE_WATCH_RUNTIME = "com.apple.CoreSimulator.SimRuntime.watchOS-1-0"

XcodesArg = Union[Xcode, Iterable[Xcode], Dict[str, Xcode]]


def family_for_model(model: str) -> str:
    """"iPhone12,1" -> "iphone", "Watch5,4" -> "watch"."""
    return re.sub(r"[\W0-9_]", "", model or "").lower()


def _type_for(family: str, runtime_id: str) -> Optional[SimulatorType]:
    if family in ("iphone", "ipad"):
        return SimulatorType.IOS
    if family == "watch":
        return SimulatorType.WATCHOS
    # Unknown model identifiers fall back to the runtime's platform
    return runtime_platform(runtime_id)


def _coerce_xcodes(xcodes: XcodesArg) -> Dict[str, Xcode]:
    if isinstance(xcodes, Xcode):
        return {xcodes.id: xcodes}
    if isinstance(xcodes, dict):
        return {x.id: x for x in xcodes.values() if isinstance(x, Xcode)}
    return {x.id: x for x in (xcodes or []) if isinstance(x, Xcode)}


# =========================================================================
# On-disk device records
# =========================================================================

def read_device_records(devices_dir: str = DEFAULT_DEVICES_DIR) -> List[DeviceRecord]:
    """Read every <devices_dir>/<UDID>/device.plist.

    Records whose directory name differs from their UDID are skipped.
    """
    devices_dir = os.path.expanduser(devices_dir)
    if not os.path.isdir(devices_dir):
        return []

    records = []
    for dirname in sorted(os.listdir(devices_dir)):
        device_dir = os.path.join(devices_dir, dirname)
        plist_file = os.path.join(device_dir, "device.plist")
        if not os.path.isfile(plist_file):
            continue
        try:
            info = read_plist(plist_file)
        except (OSError, plistlib.InvalidFileException, ValueError) as e:
            logger.debug(f"Unreadable device.plist in {device_dir}: {e}")
            continue

        udid = info.get("UDID")
        if udid != dirname or not info.get("runtime") or not info.get("deviceType"):
            continue
        records.append(DeviceRecord(
            udid=udid,
            name=info.get("name", udid),
            device_type=info["deviceType"],
            runtime=info["runtime"],
            device_dir=device_dir,
        ))
    return records


def merge_listing(records: List[DeviceRecord], listing: Optional[SimctlListing]) -> List[DeviceRecord]:
    """Add simctl-only devices and copy simctl's device state onto records."""
    if listing is None:
        return list(records)

    by_udid = {r.udid: r for r in records}
    merged = list(records)
    for runtime, row in listing.iter_devices():
        udid = row.get("udid")
        if not udid:
            continue
        existing = by_udid.get(udid)
        if existing is not None:
            existing.state = row.get("state")
            continue
        device_type = row.get("deviceTypeIdentifier")
        if not device_type or row.get("isAvailable") is False:
            continue
        data_path = row.get("dataPath")
        record = DeviceRecord(
            udid=udid,
            name=row.get("name", udid),
            device_type=device_type,
            runtime=runtime,
            device_dir=os.path.dirname(data_path) if data_path else None,
            state=row.get("state"),
        )
        by_udid[udid] = record
        merged.append(record)
    return merged


# =========================================================================
# Registry generation
# =========================================================================

def _make_handle(record: DeviceRecord, runtime: RuntimeInfo, device_type: DeviceTypeInfo,
                 xcode: Xcode, devices_dir: str, logs_dir: str) -> Optional[SimulatorHandle]:
    family = family_for_model(device_type.model)
    sim_type = _type_for(family, record.runtime)
    if sim_type is None:
        return None

    device_dir = record.device_dir or os.path.join(os.path.expanduser(devices_dir), record.udid)
    common = dict(
        udid=record.udid,
        name=record.name,
        version=runtime.version,
        device_type=record.device_type,
        device_name=device_type.name,
        model=device_type.model,
        family=family,
        runtime=record.runtime,
        runtime_name=runtime.name,
        device_dir=device_dir,
        data_dir=os.path.join(device_dir, "data"),
        system_log=os.path.join(os.path.expanduser(logs_dir), record.udid, "system.log"),
        simctl=xcode.executables.get("simctl"),
        state=record.state,
    )
    if sim_type == SimulatorType.IOS:
        return IosSimulator(simulator=xcode.executables.get("simulator"), **common)
    return WatchSimulator(simulator=xcode.executables.get("watchsimulator"), **common)


def _bucket_versions(handle: SimulatorHandle, xcodes: Dict[str, Xcode], runtime_versions: set) -> List[str]:
    """Version buckets a handle belongs in.

    Besides its runtime version, a handle also serves any SDK version of a
    supporting Xcode that has no runtime of its own but shares the runtime's
    major.minor (an iOS 10.3.1 runtime serves the 10.3 SDK).
    """
    buckets = [handle.version]
    sdk_key = "ios" if handle.is_ios else "watchos"
    short = version.format_version(handle.version, 2, 2)
    for xcode_id in handle.supports_xcode:
        for sdk in xcodes[xcode_id].sdks.get(sdk_key, ()):
            if (sdk not in buckets and sdk not in runtime_versions
                    and version.format_version(sdk, 2, 2) == short):
                buckets.append(sdk)
    return buckets


def _fake_watches(xcodes: Dict[str, Xcode]) -> List[WatchSimulator]:
    legacy = [x for x in xcodes.values() if version.satisfies(x.version, FAKE_WATCH_XCODE_RANGE)]
    if not legacy:
        return []
    result = []
    for fake in FAKE_WATCH_SIMULATORS:
        result.append(WatchSimulator(
            udid=fake["udid"],
            name=fake["name"],
            version="1.0",
            device_type=fake["device_type"],
            device_name=fake["name"],
            model=fake["model"],
            family="watch",
            runtime=FAKE_WATCH_RUNTIME,
            runtime_name="watchOS 1.0",
            simctl=legacy[0].executables.get("simctl"),
            simulator=legacy[0].executables.get("watchsimulator"),
            supports_xcode={x.id: True for x in legacy},
        ))
    return result


def _resolve_watch_companions(ios_handles: List[IosSimulator],
                              watch_handles: List[WatchSimulator],
                              xcodes: Dict[str, Xcode]) -> None:
    for sim in ios_handles:
        for xcode_id, supported in sim.supports_watch.items():
            if not supported:
                continue
            for watch_range in xcodes[xcode_id].watch_ranges_for(sim.version):
                for watch in watch_handles:
                    if not version.satisfies(watch.version, watch_range):
                        continue
                    companions = sim.watch_companion.setdefault(xcode_id, [])
                    if watch.udid not in companions:
                        companions.append(watch.udid)


def _sorted_buckets(buckets: Dict[str, list]) -> Dict[str, list]:
    return {
        ver: sorted(buckets[ver], key=lambda s: s.model)
        for ver in version.sort_versions(buckets)
    }


def generate_registry(records: Iterable[DeviceRecord], xcodes: XcodesArg,
                      devices_dir: str = DEFAULT_DEVICES_DIR,
                      logs_dir: str = DEFAULT_LOGS_DIR) -> SimulatorRegistry:
    """Build the bucketed registry of handles from device records."""
    xcodes = _coerce_xcodes(xcodes)
    runtime_versions = {
        rt.version for x in xcodes.values() for rt in x.sim_runtimes.values() if rt.version
    }

    ios: Dict[str, List[IosSimulator]] = {}
    watchos: Dict[str, List[WatchSimulator]] = {}
    ios_handles: List[IosSimulator] = []
    watch_handles: List[WatchSimulator] = []
    seen = set()

    for record in records:
        if record.udid in seen:
            continue
        handle = None
        for xcode in xcodes.values():
            runtime = xcode.sim_runtimes.get(record.runtime)
            device_type = xcode.sim_device_types.get(record.device_type)
            if not runtime or not device_type:
                continue
            if handle is None:
                handle = _make_handle(record, runtime, device_type, xcode, devices_dir, logs_dir)
                if handle is None:
                    break
            handle.supports_xcode[xcode.id] = True
            if isinstance(handle, IosSimulator):
                handle.supports_watch[xcode.id] = device_type.supports_watch_companion

        if handle is None:
            logger.debug(f"Simulator {record.udid} is not usable by any Xcode, skipping")
            continue
        seen.add(record.udid)
        if isinstance(handle, IosSimulator):
            ios_handles.append(handle)
        else:
            watch_handles.append(handle)

    watch_handles.extend(w for w in _fake_watches(xcodes) if w.udid not in seen)

    for handle in ios_handles:
        for ver in _bucket_versions(handle, xcodes, runtime_versions):
            ios.setdefault(ver, []).append(handle)
    for handle in watch_handles:
        for ver in _bucket_versions(handle, xcodes, runtime_versions):
            watchos.setdefault(ver, []).append(handle)

    registry = SimulatorRegistry(ios=_sorted_buckets(ios), watchos=_sorted_buckets(watchos))
    _resolve_watch_companions(registry.ios_handles(), registry.watch_handles(), xcodes)
    return registry


# =========================================================================
# Catalog
# =========================================================================

class SimulatorCatalog:
    """Builds and caches the simulator registry for a set of Xcodes."""

    def __init__(self,
                 devices_dir: str = DEFAULT_DEVICES_DIR,
                 logs_dir: str = DEFAULT_LOGS_DIR,
                 cache: DetectionCache = detection_cache,
                 gateway_factory: Callable[[str], SimctlGateway] = SimctlGateway):
        self.devices_dir = devices_dir
        self.logs_dir = logs_dir
        self._cache = cache
        self._gateway_factory = gateway_factory

    def _key(self, xcodes: Dict[str, Xcode]) -> str:
        return f"simulators:{self.devices_dir}:" + ",".join(sorted(xcodes))

    async def build(self, xcodes: XcodesArg, force: bool = False) -> SimulatorRegistry:
        """Return the registry for these Xcodes, rebuilding when forced."""
        xcodes = _coerce_xcodes(xcodes)
        return await self._cache.get(self._key(xcodes), lambda: self._build(xcodes), force=force)

    def invalidate(self) -> None:
        self._cache.invalidate_prefix("simulators:")

    async def _list(self, xcodes: Dict[str, Xcode]) -> Optional[SimctlListing]:
        latest = newest(xcodes.values())
        if latest is None:
            return None
        gateway = self._gateway_factory(latest.executables.get("simctl") or "simctl")
        try:
            return await gateway.list()
        except Exception as e:
            logger.warning(f"simctl list failed, using on-disk simulators only: {e}")
            return None

    async def _build(self, xcodes: Dict[str, Xcode]) -> SimulatorRegistry:
        logger.info(f"Building simulator catalog for {len(xcodes)} Xcode(s)...")
        listing = await self._list(xcodes)
        records = await asyncio.to_thread(read_device_records, self.devices_dir)
        records = merge_listing(records, listing)
        registry = generate_registry(records, xcodes, self.devices_dir, self.logs_dir)
        logger.info(f"Found {len(registry.ios_handles())} iOS and "
                    f"{len(registry.watch_handles())} watchOS simulator(s)")
        return registry
