"""Shared fixtures: fake Xcodes, device records and simulator handles."""

import pytest

from models import DeviceRecord, DeviceTypeInfo, IosSimulator, RuntimeInfo, WatchSimulator
from services import compatibility
from services.cache import DetectionCache
from services.xcode import Xcode

IOS_RUNTIME = "com.apple.CoreSimulator.SimRuntime.iOS-{}"
WATCH_RUNTIME = "com.apple.CoreSimulator.SimRuntime.watchOS-{}"

IPHONE = DeviceTypeInfo(
    identifier="com.apple.CoreSimulator.SimDeviceType.iPhone-11",
    name="iPhone 11",
    model="iPhone12,1",
    supports_watch_companion=True,
)
IPAD = DeviceTypeInfo(
    identifier="com.apple.CoreSimulator.SimDeviceType.iPad-Air",
    name="iPad Air",
    model="iPad11,3",
    supports_watch_companion=False,
)
WATCH = DeviceTypeInfo(
    identifier="com.apple.CoreSimulator.SimDeviceType.Apple-Watch-Series-5-44mm",
    name="Apple Watch Series 5 - 44mm",
    model="Watch5,4",
)


def runtime(platform: str, ver: str) -> RuntimeInfo:
    template = IOS_RUNTIME if platform == "ios" else WATCH_RUNTIME
    label = "iOS" if platform == "ios" else "watchOS"
    return RuntimeInfo(
        identifier=template.format(ver.replace(".", "-")),
        name=f"{label} {ver}",
        version=ver,
    )


def make_xcode(ver: str = "11.0", build: str = "11A420a", *,
               ios=("13.0",), watchos=("6.0",),
               eula_accepted: bool = True, selected: bool = False,
               device_types=(IPHONE, IPAD, WATCH),
               pair_table=compatibility.DEVICE_PAIR_COMPATIBILITY) -> Xcode:
    runtimes = [runtime("ios", v) for v in ios] + [runtime("watchos", v) for v in watchos]
    return Xcode(
        f"/Applications/Xcode-{ver}.app/Contents/Developer", ver, build,
        eula_accepted=eula_accepted,
        selected=selected,
        sdks={"ios": list(ios), "watchos": list(watchos)},
        sim_device_types={d.identifier: d for d in device_types},
        sim_runtimes={r.identifier: r for r in runtimes},
        executables={
            "xcodebuild": "/usr/bin/xcodebuild",
            "simctl": "/usr/bin/simctl",
            "simulator": "/Applications/Simulator.app/Contents/MacOS/Simulator",
            "watchsimulator": "/Applications/Simulator.app/Contents/MacOS/Simulator",
        },
        pair_table=pair_table,
    )


def make_record(udid: str, device_type: DeviceTypeInfo, platform: str, ver: str,
                name: str = None) -> DeviceRecord:
    return DeviceRecord(
        udid=udid,
        name=name or device_type.name,
        device_type=device_type.identifier,
        runtime=runtime(platform, ver).identifier,
    )


def make_ios_sim(udid: str = "IOS-1", ver: str = "13.0", **kwargs) -> IosSimulator:
    fields = dict(
        udid=udid,
        name="iPhone 11",
        version=ver,
        device_type=IPHONE.identifier,
        device_name=IPHONE.name,
        model=IPHONE.model,
        family="iphone",
        runtime=runtime("ios", ver).identifier,
        runtime_name=f"iOS {ver}",
        simctl="/usr/bin/simctl",
        simulator="/Applications/Simulator.app/Contents/MacOS/Simulator",
    )
    fields.update(kwargs)
    return IosSimulator(**fields)


def make_watch_sim(udid: str = "WATCH-1", ver: str = "6.0", **kwargs) -> WatchSimulator:
    fields = dict(
        udid=udid,
        name="Apple Watch Series 5 - 44mm",
        version=ver,
        device_type=WATCH.identifier,
        device_name=WATCH.name,
        model=WATCH.model,
        family="watch",
        runtime=runtime("watchos", ver).identifier,
        runtime_name=f"watchOS {ver}",
        simctl="/usr/bin/simctl",
        simulator="/Applications/Simulator.app/Contents/MacOS/Simulator",
    )
    fields.update(kwargs)
    return WatchSimulator(**fields)


@pytest.fixture
def cache():
    """A private detection cache so tests never share detection results."""
    return DetectionCache()
