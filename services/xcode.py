"""Xcode toolchain descriptors and discovery.

An Xcode descriptor is built once per installed Xcode from its bundle on
disk: version manifest, SDK directories and CoreSimulator profile bundles
(device types and runtimes). Runtimes the Xcode cannot pair according to
the compatibility table are dropped, so an Xcode only advertises what it
can actually drive.
"""

import asyncio
import glob
import logging
import os
import plistlib
import re
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from exceptions import ToolchainError
from models import DeviceTypeInfo, RuntimeInfo, SimctlListing, SimulatorType

from . import compatibility, process, version
from .cache import DetectionCache, detection_cache
from .simctl import SimctlGateway

logger = logging.getLogger(__name__)

XCODE_LOCATIONS = ["/Applications", "~/Applications"]
GLOBAL_SIM_PROFILES_PATH = "/Library/Developer/CoreSimulator/Profiles"
MIN_SUPPORTED_VERSION = "6"

# Xcode 9 moved the profiles into the "xxxOS" platform directories
PROFILE_PLATFORMS = ["iPhoneSimulator", "iPhoneOS", "WatchSimulator", "WatchOS"]

_RUNTIME_PLATFORM_RE = re.compile(r"\.(\w+)(?:-\d+)*$")


def read_plist(path: str) -> dict:
    """Read an XML or binary plist."""
    with open(path, "rb") as f:
        return plistlib.load(f)


def runtime_platform(runtime_id: str) -> Optional[SimulatorType]:
    """Map a runtime identifier such as "...SimRuntime.iOS-13-0" to its platform."""
    m = _RUNTIME_PLATFORM_RE.search(runtime_id or "")
    if not m:
        return None
    name = m.group(1).lower()
    if name == "ios":
        return SimulatorType.IOS
    if name == "watchos":
        return SimulatorType.WATCHOS
    return None


class Xcode:
    """One installed Xcode. Immutable once constructed."""

    def __init__(self, path: str, version_str: str, build: str, *,
                 eula_accepted: bool = False,
                 selected: bool = False,
                 sdks: Optional[Dict[str, List[str]]] = None,
                 sim_device_types: Optional[Dict[str, DeviceTypeInfo]] = None,
                 sim_runtimes: Optional[Dict[str, RuntimeInfo]] = None,
                 executables: Optional[Dict[str, Optional[str]]] = None,
                 pair_table: Mapping[str, compatibility.PairTable] = compatibility.DEVICE_PAIR_COMPATIBILITY):
        self._path = path
        self._version = version_str
        self._build = build
        self._eula_accepted = eula_accepted
        self._selected = selected
        sdks = sdks or {}
        self._sdks = MappingProxyType({
            "ios": tuple(version.sort_versions(sdks.get("ios", []), reverse=True)),
            "watchos": tuple(version.sort_versions(sdks.get("watchos", []), reverse=True)),
        })
        self._executables = MappingProxyType(dict(executables or {}))
        self._pairs = compatibility.for_xcode(version_str, pair_table)
        self._device_types = MappingProxyType(dict(sim_device_types or {}))

        runtimes = {}
        for identifier, runtime in (sim_runtimes or {}).items():
            if self._runtime_supported(runtime):
                runtimes[identifier] = runtime
            else:
                logger.debug(f"Xcode {self.id} cannot pair runtime {identifier}, ignoring")
        self._runtimes = MappingProxyType(runtimes)

    # =========================================================================
    # Identity and attributes
    # =========================================================================

    @property
    def id(self) -> str:
        return f"{self._version}:{self._build}"

    @property
    def path(self) -> str:
        return self._path

    @property
    def version(self) -> str:
        return self._version

    @property
    def build(self) -> str:
        return self._build

    @property
    def eula_accepted(self) -> bool:
        return self._eula_accepted

    @property
    def selected(self) -> bool:
        return self._selected

    @property
    def sdks(self) -> Mapping[str, tuple]:
        return self._sdks

    @property
    def sim_device_types(self) -> Mapping[str, DeviceTypeInfo]:
        return self._device_types

    @property
    def sim_runtimes(self) -> Mapping[str, RuntimeInfo]:
        return self._runtimes

    @property
    def sim_device_pairs(self) -> compatibility.PairTable:
        return self._pairs

    @property
    def executables(self) -> Mapping[str, Optional[str]]:
        return self._executables

    # =========================================================================
    # Compatibility queries
    # =========================================================================

    def supports_ios(self, ios_version: str) -> bool:
        return any(version.satisfies(ios_version, r) for r in self._pairs)

    def watch_ranges_for(self, ios_version: str) -> List[str]:
        """watchOS ranges that may pair with an iOS version under this Xcode."""
        ranges = []
        for ios_range, watch_ranges in self._pairs.items():
            if version.satisfies(ios_version, ios_range):
                ranges.extend(r for r, ok in watch_ranges.items() if ok and r not in ranges)
        return ranges

    def supports_watchos(self, watch_version: str) -> bool:
        return any(
            ok and version.satisfies(watch_version, r)
            for watch_ranges in self._pairs.values()
            for r, ok in watch_ranges.items()
        )

    def can_pair(self, ios_version: str, watch_version: str) -> bool:
        return any(version.satisfies(watch_version, r) for r in self.watch_ranges_for(ios_version))

    def _runtime_supported(self, runtime: RuntimeInfo) -> bool:
        if not runtime.version:
            return False
        platform = runtime_platform(runtime.identifier)
        if platform == SimulatorType.IOS:
            return self.supports_ios(runtime.version)
        if platform == SimulatorType.WATCHOS:
            return self.supports_watchos(runtime.version)
        return False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "path": self.path,
            "version": self.version,
            "build": self.build,
            "selected": self.selected,
            "eulaAccepted": self.eula_accepted,
            "sdks": {k: list(v) for k, v in self.sdks.items()},
            "executables": dict(self.executables),
            "simDeviceTypes": {k: v.to_dict() for k, v in self.sim_device_types.items()},
            "simRuntimes": {k: v.to_dict() for k, v in self.sim_runtimes.items()},
        }

    def __repr__(self) -> str:
        return f"Xcode(id={self.id!r}, path={self.path!r})"

    # =========================================================================
    # Construction from disk
    # =========================================================================

    @classmethod
    async def from_path(cls, path: str, *,
                        selected: bool = False,
                        listing: Optional[SimctlListing] = None,
                        global_profiles_path: Optional[str] = GLOBAL_SIM_PROFILES_PATH,
                        pair_table: Mapping[str, compatibility.PairTable] = compatibility.DEVICE_PAIR_COMPATIBILITY) -> "Xcode":
        """Build a descriptor from an Xcode bundle or its Contents/Developer dir.

        Raises:
            ToolchainError: path is not a usable, supported Xcode
        """
        info = await asyncio.to_thread(_scan_xcode, path, global_profiles_path)
        if listing is not None:
            _merge_listing(info, listing)
        eula_accepted = await check_eula(info["executables"]["xcodebuild"])
        return cls(
            info["path"], info["version"], info["build"],
            eula_accepted=eula_accepted,
            selected=selected,
            sdks=info["sdks"],
            sim_device_types=info["device_types"],
            sim_runtimes=info["runtimes"],
            executables=info["executables"],
            pair_table=pair_table,
        )


# =========================================================================
# Filesystem scanning
# =========================================================================

def _is_file(path: str) -> bool:
    return os.path.isfile(path)


def _scan_xcode(path: str, global_profiles_path: Optional[str]) -> dict:
    path = os.path.expanduser(path)
    if not os.path.isdir(path):
        raise ToolchainError("Directory does not exist", path)

    xcodebuild = None
    for rel in ("usr/bin", "Developer/usr/bin", "Contents/Developer/usr/bin"):
        candidate = os.path.join(path, rel, "xcodebuild")
        if _is_file(candidate):
            xcodebuild = candidate
            break
    if not xcodebuild:
        raise ToolchainError('"xcodebuild" not found', path)

    # .../Xcode.app/Contents/Developer
    developer_dir = os.path.abspath(os.path.join(os.path.dirname(xcodebuild), "..", ".."))
    version_plist = os.path.abspath(os.path.join(developer_dir, "..", "version.plist"))
    if not _is_file(version_plist):
        raise ToolchainError('"version.plist" not found', path)

    manifest = read_plist(version_plist)
    xcode_version = str(manifest.get("CFBundleShortVersionString", ""))
    if not version.is_valid(xcode_version) or version.lt(xcode_version, MIN_SUPPORTED_VERSION):
        raise ToolchainError(f"Found Xcode {xcode_version}, but it is too old and unsupported", path)

    device_types: Dict[str, DeviceTypeInfo] = {}
    runtimes: Dict[str, RuntimeInfo] = {}
    profile_dirs = [global_profiles_path] if global_profiles_path else []
    profile_dirs += [
        os.path.join(developer_dir, f"Platforms/{name}.platform/Developer/Library/CoreSimulator/Profiles")
        for name in PROFILE_PLATFORMS
    ]
    for profile_dir in profile_dirs:
        _scan_profiles(profile_dir, device_types, runtimes)

    return {
        "path": developer_dir,
        "version": xcode_version,
        "build": str(manifest.get("ProductBuildVersion", "")),
        "sdks": {
            "ios": find_sdks(developer_dir, "iPhoneOS"),
            "watchos": find_sdks(developer_dir, "WatchOS"),
        },
        "device_types": device_types,
        "runtimes": runtimes,
        "executables": _find_executables(developer_dir, xcode_version, xcodebuild),
    }


def _find_executables(developer_dir: str, xcode_version: str, xcodebuild: str) -> Dict[str, Optional[str]]:
    simulator = None
    for name in ("Simulator", "iOS Simulator"):
        app = os.path.join(developer_dir, f"Applications/{name}.app/Contents/MacOS/{name}")
        if _is_file(app):
            simulator = app
            break

    if version.gte(xcode_version, "9"):
        # One Simulator app drives both phones and watches
        watchsimulator = simulator
    else:
        app = os.path.join(developer_dir, "Applications/Simulator (Watch).app/Contents/MacOS/Simulator (Watch)")
        watchsimulator = app if _is_file(app) else None

    simctl = os.path.join(developer_dir, "usr/bin/simctl")
    return {
        "xcodebuild": xcodebuild,
        "simctl": simctl if _is_file(simctl) else "simctl",
        "simulator": simulator,
        "watchsimulator": watchsimulator,
    }


def find_sdks(developer_dir: str, platform: str) -> List[str]:
    """List SDK versions for a platform, newest first.

    The version embedded in the SDK's SystemVersion.plist wins over the one
    in the directory name.
    """
    sdk_dir = os.path.join(developer_dir, f"Platforms/{platform}.platform/Developer/SDKs")
    if not os.path.isdir(sdk_dir):
        return []

    name_re = re.compile(rf"^{re.escape(platform)}(.*)\.sdk$")
    results = []
    for name in os.listdir(sdk_dir):
        m = name_re.match(name)
        sdk = os.path.join(sdk_dir, name)
        if not m or not os.path.isdir(sdk):
            continue
        sdk_version = m.group(1) or None
        try:
            info = read_plist(os.path.join(sdk, "System/Library/CoreServices/SystemVersion.plist"))
            if info.get("ProductVersion"):
                sdk_version = info["ProductVersion"]
        except (OSError, plistlib.InvalidFileException) as e:
            logger.debug(f"No SystemVersion.plist in {sdk}: {e}")
        if sdk_version and version.is_valid(sdk_version) and sdk_version not in results:
            results.append(sdk_version)
    return version.sort_versions(results, reverse=True)


def _scan_profiles(profile_dir: str,
                   device_types: Dict[str, DeviceTypeInfo],
                   runtimes: Dict[str, RuntimeInfo]) -> None:
    """Add device types and runtimes found under a CoreSimulator Profiles dir.

    Entries already present are kept; some Xcodes ship conflicting
    metadata for the same identifier.
    """
    if not os.path.isdir(profile_dir):
        return

    for bundle in sorted(glob.glob(os.path.join(profile_dir, "DeviceTypes", "*"))):
        try:
            info = read_plist(os.path.join(bundle, "Contents/Info.plist"))
        except (OSError, plistlib.InvalidFileException):
            continue
        identifier = info.get("CFBundleIdentifier")
        if not identifier or identifier in device_types:
            continue

        model = "unknown"
        supports_watch = False
        try:
            model = read_plist(os.path.join(bundle, "Contents/Resources/profile.plist")).get("modelIdentifier") or model
        except (OSError, plistlib.InvalidFileException):
            pass
        try:
            capabilities = read_plist(os.path.join(bundle, "Contents/Resources/capabilities.plist"))
            supports_watch = bool(capabilities.get("capabilities", {}).get("watch-companion"))
        except (OSError, plistlib.InvalidFileException):
            pass

        device_types[identifier] = DeviceTypeInfo(
            identifier=identifier,
            name=info.get("CFBundleName", identifier),
            model=model,
            supports_watch_companion=supports_watch,
        )

    for bundle in sorted(glob.glob(os.path.join(profile_dir, "Runtimes", "*"))):
        try:
            info = read_plist(os.path.join(bundle, "Contents/Info.plist"))
        except (OSError, plistlib.InvalidFileException):
            continue
        identifier = info.get("CFBundleIdentifier")
        if not identifier or identifier in runtimes:
            continue

        runtime_version = None
        try:
            runtime_version = read_plist(os.path.join(bundle, "Contents/Resources/profile.plist")).get("defaultVersionString")
        except (OSError, plistlib.InvalidFileException):
            pass

        runtimes[identifier] = RuntimeInfo(
            identifier=identifier,
            name=info.get("CFBundleName", identifier),
            version=runtime_version,
        )


def _merge_listing(info: dict, listing: SimctlListing) -> None:
    """Fill in device types and runtimes that only simctl knows about.

    Newer Xcodes install runtimes outside the Xcode bundle, so they only
    show up in `simctl list`.
    """
    for row in listing.device_types:
        identifier = row.get("identifier")
        if not identifier or identifier in info["device_types"]:
            continue
        family = row.get("productFamily", "")
        info["device_types"][identifier] = DeviceTypeInfo(
            identifier=identifier,
            name=row.get("name", identifier),
            model=row.get("modelIdentifier") or "unknown",
            supports_watch_companion=family == "iPhone",
        )

    for row in listing.runtimes:
        identifier = row.get("identifier")
        if not identifier or identifier in info["runtimes"]:
            continue
        if row.get("isAvailable") is False:
            continue
        info["runtimes"][identifier] = RuntimeInfo(
            identifier=identifier,
            name=row.get("name", identifier),
            version=row.get("version"),
        )


async def check_eula(xcodebuild: str) -> bool:
    """Run `xcodebuild -checkFirstLaunchStatus`; anything but exit 0 means not accepted."""
    try:
        result = await process.run(xcodebuild, "-checkFirstLaunchStatus")
    except OSError as e:
        logger.warning(f"Unable to check Xcode license status: {e}")
        return False
    return result.returncode == 0


# =========================================================================
# Discovery
# =========================================================================

async def get_selected_path() -> Optional[str]:
    """Developer dir reported by `xcode-select -p`."""
    try:
        result = await process.run("xcode-select", "-p")
    except OSError as e:
        logger.debug(f"xcode-select unavailable: {e}")
        return None
    if result.returncode != 0:
        return None
    selected = result.stdout.strip()
    return os.path.realpath(selected) if selected else None


def find_xcode_paths(search_paths: Iterable[str]) -> List[str]:
    """Find Contents/Developer dirs of Xcode bundles in the search paths."""
    found = []
    for location in search_paths:
        location = os.path.expanduser(location)
        if not os.path.isdir(location):
            continue
        if os.path.basename(location.rstrip("/")).endswith(".app"):
            candidates = [location]
        else:
            candidates = [os.path.join(location, n) for n in sorted(os.listdir(location)) if n.endswith(".app")]
        for app in candidates:
            developer_dir = os.path.realpath(os.path.join(app, "Contents", "Developer"))
            if os.path.isfile(os.path.join(developer_dir, "usr", "bin", "xcodebuild")) and developer_dir not in found:
                found.append(developer_dir)
    return found


async def _detect(search_paths: List[str], pair_table) -> Dict[str, Xcode]:
    selected_path = await get_selected_path()
    paths = await asyncio.to_thread(find_xcode_paths, search_paths)
    if selected_path and selected_path not in paths and os.path.isdir(selected_path):
        paths.insert(0, selected_path)

    xcodes: Dict[str, Xcode] = {}
    for path in paths:
        listing = None
        simctl = os.path.join(path, "usr/bin/simctl")
        if os.path.isfile(simctl):
            try:
                listing = await SimctlGateway(simctl).list()
            except Exception as e:
                logger.warning(f"simctl list failed for {path}: {e}")
        try:
            xcode = await Xcode.from_path(
                path,
                selected=path == selected_path,
                listing=listing,
                pair_table=pair_table,
            )
        except ToolchainError as e:
            logger.warning(f"Skipping Xcode at {path}: {e}")
            continue
        if xcode.id not in xcodes:
            xcodes[xcode.id] = xcode
            logger.info(f"Found Xcode {xcode.id} at {xcode.path}"
                        f"{' (selected)' if xcode.selected else ''}")

    logger.info(f"Detected {len(xcodes)} Xcode install(s)")
    return xcodes


async def detect_xcodes(search_paths: Optional[List[str]] = None,
                        force: bool = False,
                        cache: DetectionCache = detection_cache,
                        pair_table: Mapping[str, compatibility.PairTable] = compatibility.DEVICE_PAIR_COMPATIBILITY) -> Dict[str, Xcode]:
    """Detect installed Xcodes, keyed by Xcode id. Cached until forced."""
    paths = list(XCODE_LOCATIONS) + list(search_paths or [])
    key = "xcodes:" + "|".join(paths)
    return await cache.get(key, lambda: _detect(paths, pair_table), force=force)


def newest(xcodes: Iterable[Xcode]) -> Optional[Xcode]:
    ordered = sorted(xcodes, key=lambda x: version.parse(x.version))
    return ordered[-1] if ordered else None
