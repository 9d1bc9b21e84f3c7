"""Data models for simulator detection, resolution and sessions."""

import re
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Dict, Iterable, Iterator, List, Optional, Union

from exceptions import InvalidParamsError, SimulatorCrash


def _snake_case(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def _from_camel_dict(cls, data: Optional[dict], aliases: Optional[Dict[str, str]] = None,
                     ignore: Iterable[str] = ()) -> dict:
    """Pick the dataclass fields of ``cls`` out of a camelCase RPC payload.

    Keys listed in ``aliases`` map straight to a field name; anything else is
    snake_cased. Keys in ``ignore`` are skipped.

    Raises:
        InvalidParamsError: if a key matches no field
    """
    known = {f.name for f in fields(cls) if f.init}
    aliases = aliases or {}
    kwargs = {}
    unknown = []
    for key, value in (data or {}).items():
        if key in ignore:
            continue
        name = aliases.get(key) or _snake_case(key)
        if name in known:
            kwargs[name] = value
        else:
            unknown.append(key)
    if unknown:
        raise InvalidParamsError(
            f"Unknown {cls.__name__} field(s): {', '.join(sorted(unknown))}", sorted(unknown))
    return kwargs


class SimulatorType(str, Enum):
    IOS = "ios"
    WATCHOS = "watchos"


class DeviceState(Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class ConnectionType(Enum):
    USB = "USB"
    WIFI = "WiFi"
    UNKNOWN = "Unknown"


# =========================================================================
# Toolchain catalog entries
# =========================================================================

@dataclass
class DeviceTypeInfo:
    """A simulated hardware model, e.g. "iPhone 14"."""
    identifier: str
    name: str
    model: str
    supports_watch_companion: bool = False

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "name": self.name,
            "model": self.model,
            "supportsWatch": self.supports_watch_companion,
        }


@dataclass
class RuntimeInfo:
    """An installable OS runtime, e.g. "iOS 16.0"."""
    identifier: str
    name: str
    version: str

    def to_dict(self) -> dict:
        return {
            "identifier": self.identifier,
            "name": self.name,
            "version": self.version,
        }


# =========================================================================
# simctl listing
# =========================================================================

@dataclass
class PairRecord:
    """An iOS/watchOS simulator pair as reported by `simctl list`."""
    pair_id: str
    phone_udid: str
    watch_udid: str
    active: bool = False

    def to_dict(self) -> dict:
        return {
            "pairId": self.pair_id,
            "phoneUdid": self.phone_udid,
            "watchUdid": self.watch_udid,
            "active": self.active,
        }


@dataclass
class SimctlListing:
    """Parsed output of `simctl list --json`."""
    device_types: List[dict] = field(default_factory=list)
    runtimes: List[dict] = field(default_factory=list)
    devices: Dict[str, List[dict]] = field(default_factory=dict)  # runtime id -> devices
    pairs: Dict[str, PairRecord] = field(default_factory=dict)
    ios_sim_to_watch_sim_to_pair: Dict[str, Dict[str, PairRecord]] = field(default_factory=dict)

    def iter_devices(self) -> Iterator[tuple]:
        """Yield (runtime identifier, device row) for every listed device."""
        for runtime, rows in self.devices.items():
            for row in rows:
                yield runtime, row

    def find_device(self, udid: str) -> Optional[dict]:
        for _, row in self.iter_devices():
            if row.get("udid") == udid:
                return row
        return None

    def device_state(self, udid: str) -> Optional[str]:
        row = self.find_device(udid)
        return row.get("state") if row else None

    def pairs_for_watch(self, watch_udid: str) -> List[PairRecord]:
        return [p for p in self.pairs.values() if p.watch_udid == watch_udid]


@dataclass
class DeviceRecord:
    """One simulator instance as stored on disk or listed by simctl."""
    udid: str
    name: str
    device_type: str
    runtime: str
    device_dir: Optional[str] = None
    state: Optional[str] = None


# =========================================================================
# Simulator handles
# =========================================================================

@dataclass(eq=False)
class SimulatorHandle:
    """Shared fields of iOS and watchOS simulator handles.

    One handle exists per UDID. The session fields (running, start_time,
    installing, installed) belong to whichever SessionController is driving
    the handle.
    """
    type: ClassVar[SimulatorType]

    udid: str
    name: str
    version: str
    device_type: str
    device_name: str
    model: str
    family: str
    runtime: str
    runtime_name: str
    device_dir: Optional[str] = None
    system_log: Optional[str] = None
    data_dir: Optional[str] = None
    simctl: Optional[str] = None
    simulator: Optional[str] = None
    state: Optional[str] = None
    supports_xcode: Dict[str, bool] = field(default_factory=dict)

    # Session state
    running: bool = False
    start_time: Optional[float] = None
    installing: bool = False
    installed: bool = False

    @property
    def is_ios(self) -> bool:
        return self.type == SimulatorType.IOS

    def to_dict(self) -> dict:
        return {
            "udid": self.udid,
            "name": self.name,
            "type": self.type.value,
            "version": self.version,
            "deviceType": self.device_type,
            "deviceName": self.device_name,
            "model": self.model,
            "family": self.family,
            "runtime": self.runtime,
            "runtimeName": self.runtime_name,
            "deviceDir": self.device_dir,
            "systemLog": self.system_log,
            "dataDir": self.data_dir,
            "simctl": self.simctl,
            "simulator": self.simulator,
            "state": self.state,
            "supportsXcode": dict(self.supports_xcode),
            "running": self.running,
        }


@dataclass(eq=False)
class IosSimulator(SimulatorHandle):
    type: ClassVar[SimulatorType] = SimulatorType.IOS

    supports_watch: Dict[str, bool] = field(default_factory=dict)
    watch_companion: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["supportsWatch"] = dict(self.supports_watch)
        data["watchCompanion"] = {k: list(v) for k, v in self.watch_companion.items()}
        return data


@dataclass(eq=False)
class WatchSimulator(SimulatorHandle):
    type: ClassVar[SimulatorType] = SimulatorType.WATCHOS


@dataclass
class SimulatorRegistry:
    """Simulator handles bucketed by OS version, buckets sorted by version."""
    ios: Dict[str, List[IosSimulator]] = field(default_factory=dict)
    watchos: Dict[str, List[WatchSimulator]] = field(default_factory=dict)

    def ios_handles(self) -> List[IosSimulator]:
        return _unique(self.ios)

    def watch_handles(self) -> List[WatchSimulator]:
        return _unique(self.watchos)

    def find_ios(self, udid: str) -> Optional[IosSimulator]:
        for sim in self.ios_handles():
            if sim.udid == udid:
                return sim
        return None

    def find_watch(self, udid: str) -> Optional[WatchSimulator]:
        for sim in self.watch_handles():
            if sim.udid == udid:
                return sim
        return None

    def find(self, udid: str) -> Optional[SimulatorHandle]:
        return self.find_ios(udid) or self.find_watch(udid)

    def to_dict(self) -> dict:
        return {
            "ios": {ver: [s.to_dict() for s in sims] for ver, sims in self.ios.items()},
            "watchos": {ver: [s.to_dict() for s in sims] for ver, sims in self.watchos.items()},
        }


def _unique(buckets: Dict[str, list]) -> list:
    seen = set()
    result = []
    for sims in buckets.values():
        for sim in sims:
            if sim.udid not in seen:
                seen.add(sim.udid)
                result.append(sim)
    return result


# =========================================================================
# Resolution
# =========================================================================

@dataclass
class SimulatorConstraints:
    """What the caller needs from the simulator it is about to launch."""
    sim_handle_or_udid: Optional[Union[str, IosSimulator]] = None
    watch_handle_or_udid: Optional[Union[str, WatchSimulator]] = None
    ios_version: Optional[str] = None
    min_ios_version: Optional[str] = None
    family: Optional[str] = None              # "iphone" or "ipad"
    app_being_installed: bool = False
    watch_app_being_installed: bool = False
    watch_min_os_version: Optional[str] = None

    # RPC keys whose acronyms do not snake_case into a field name
    RPC_KEYS: ClassVar[Dict[str, str]] = {
        "simHandleOrUDID": "sim_handle_or_udid",
        "udid": "sim_handle_or_udid",
        "watchHandleOrUDID": "watch_handle_or_udid",
        "watchUdid": "watch_handle_or_udid",
        "watchUDID": "watch_handle_or_udid",
        "iOSVersion": "ios_version",
        "minIOSVersion": "min_ios_version",
        "watchMinOSVersion": "watch_min_os_version",
    }

    @classmethod
    def from_dict(cls, data: Optional[dict], ignore: Iterable[str] = ()) -> "SimulatorConstraints":
        """Build constraints from RPC params.

        Raises:
            InvalidParamsError: for a key that is not a constraint and not in ``ignore``
        """
        return cls(**_from_camel_dict(cls, data, cls.RPC_KEYS, ignore))


@dataclass
class Resolution:
    """The outcome of a successful resolve()."""
    sim_handle: IosSimulator
    watch_sim_handle: Optional[WatchSimulator]
    xcode: Any

    def to_dict(self) -> dict:
        return {
            "simHandle": self.sim_handle.to_dict(),
            "watchSimHandle": self.watch_sim_handle.to_dict() if self.watch_sim_handle else None,
            "selectedXcode": self.xcode.to_dict(),
        }


# =========================================================================
# Sessions
# =========================================================================

@dataclass
class LaunchOptions:
    """Per-session settings for SessionController.launch()."""
    app_path: Optional[str] = None
    kill_if_running: bool = True
    uninstall_app: bool = False
    launch_watch_app: bool = False
    launch_watch_app_only: bool = False
    focus: Optional[bool] = None
    hide: bool = False
    auto_exit: bool = False
    auto_exit_token: str = "AUTO_EXIT"
    log_filename: Optional[str] = None
    log_server_port: Optional[int] = None
    allow_watch_creation: bool = True

    # Timing, in seconds
    boot_timeout: float = 60.0
    boot_poll_interval: float = 0.5
    crash_settle_delay: float = 1.0
    log_file_retry_interval: float = 0.25
    relay_retry_delay: float = 0.25
    log_tail_interval: float = 0.5
    watch_sync_timeout: float = 30.0
    watch_sync_interval: float = 1.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "LaunchOptions":
        return cls(**_from_camel_dict(cls, data))


class SessionState(str, Enum):
    """SessionController state machine."""
    IDLE = "idle"
    STOPPING = "stopping"
    PAIRING = "pairing"
    BOOTING = "booting"
    BOOTED = "booted"
    INSTALLING = "installing"
    LAUNCHING = "launching"
    RUNNING = "running"
    QUITTING = "quitting"
    CRASHED = "crashed"


class SessionEventType(str, Enum):
    """Events emitted by a simulator session."""
    LAUNCHED = "launched"
    APP_STARTED = "app-started"
    APP_QUIT = "app-quit"
    EXIT = "exit"
    ERROR = "error"
    LOG = "log"
    LOG_DEBUG = "log-debug"
    LOG_ERROR = "log-error"
    LOG_FILE = "log-file"
    LOG_RAW = "log-raw"
    STOPPED = "stopped"


TERMINAL_EVENTS = frozenset({
    SessionEventType.APP_QUIT,
    SessionEventType.EXIT,
    SessionEventType.ERROR,
})


@dataclass
class SessionEvent:
    """A single session lifecycle event; ``type`` is the discriminator."""
    type: SessionEventType
    udid: Optional[str] = None
    message: Optional[str] = None
    code: Optional[int] = None
    error: Optional[BaseException] = None
    crash: Optional[SimulatorCrash] = None
    sim_handle: Optional[SimulatorHandle] = None
    watch_sim_handle: Optional[SimulatorHandle] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict:
        data: Dict[str, Any] = {"udid": self.udid, "timestamp": self.timestamp}
        if self.message is not None:
            data["message"] = self.message
        if self.code is not None:
            data["code"] = self.code
        if self.error is not None:
            to_dict = getattr(self.error, "to_dict", None)
            data["error"] = to_dict() if to_dict else {
                "type": type(self.error).__name__,
                "message": str(self.error),
            }
        if self.crash is not None:
            data["crash"] = self.crash.to_dict()
        if self.sim_handle is not None:
            data["simHandle"] = self.sim_handle.to_dict()
        if self.watch_sim_handle is not None:
            data["watchSimHandle"] = self.watch_sim_handle.to_dict()
        return {"event": self.type.value, "data": data}


# =========================================================================
# Physical devices
# =========================================================================

# Product type to display name mapping
PRODUCT_NAME_MAP = {
    "iPhone17,1": "iPhone 16 Pro",
    "iPhone17,2": "iPhone 16 Pro Max",
    "iPhone16,1": "iPhone 15 Pro",
    "iPhone16,2": "iPhone 15 Pro Max",
    "iPhone15,2": "iPhone 14 Pro",
    "iPhone15,3": "iPhone 14 Pro Max",
    "Watch7,1": "Apple Watch Series 9 (41mm)",
    "Watch7,2": "Apple Watch Series 9 (45mm)",
}


@dataclass
class Device:
    """A physical iOS device attached over usbmux."""
    id: str
    name: str
    state: DeviceState = DeviceState.CONNECTED
    product_type: Optional[str] = None
    product_version: Optional[str] = None
    connection_type: ConnectionType = ConnectionType.UNKNOWN

    @property
    def product_name(self) -> str:
        if self.product_type:
            return PRODUCT_NAME_MAP.get(self.product_type, self.product_type)
        return self.name

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "state": self.state.value,
            "productType": self.product_type,
            "productName": self.product_name,
            "productVersion": self.product_version,
            "connectionType": self.connection_type.value,
        }
