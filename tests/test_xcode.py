"""Tests for Xcode descriptors and discovery."""

import os
import plistlib
import pytest
from unittest.mock import AsyncMock, patch

from exceptions import ToolchainError
from models import SimctlListing, SimulatorType
from services.cache import DetectionCache
from services.process import ProcessResult
from services.xcode import Xcode, detect_xcodes, find_sdks, find_xcode_paths, newest, runtime_platform
from tests.conftest import make_xcode

PROFILES = "Platforms/{}.platform/Developer/Library/CoreSimulator/Profiles"


def write_plist(path, data):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        plistlib.dump(data, f)


def add_device_type(profiles, bundle, identifier, name, model, watch_companion=False):
    root = os.path.join(profiles, "DeviceTypes", bundle, "Contents")
    write_plist(os.path.join(root, "Info.plist"), {"CFBundleIdentifier": identifier, "CFBundleName": name})
    write_plist(os.path.join(root, "Resources/profile.plist"), {"modelIdentifier": model})
    write_plist(os.path.join(root, "Resources/capabilities.plist"),
                {"capabilities": {"watch-companion": watch_companion}})


def add_runtime(profiles, bundle, identifier, name, ver):
    root = os.path.join(profiles, "Runtimes", bundle, "Contents")
    write_plist(os.path.join(root, "Info.plist"), {"CFBundleIdentifier": identifier, "CFBundleName": name})
    write_plist(os.path.join(root, "Resources/profile.plist"), {"defaultVersionString": ver})


def make_bundle(root, name="Xcode.app", ver="11.0", build="11A420a"):
    """Lay out the parts of an Xcode bundle that detection reads."""
    app = os.path.join(root, name)
    developer = os.path.join(app, "Contents", "Developer")
    xcodebuild = os.path.join(developer, "usr/bin/xcodebuild")
    os.makedirs(os.path.dirname(xcodebuild))
    open(xcodebuild, "w").close()
    write_plist(os.path.join(app, "Contents/version.plist"),
                {"CFBundleShortVersionString": ver, "ProductBuildVersion": build})

    simulator = os.path.join(developer, "Applications/Simulator.app/Contents/MacOS/Simulator")
    os.makedirs(os.path.dirname(simulator))
    open(simulator, "w").close()

    ios_profiles = os.path.join(developer, PROFILES.format("iPhoneOS"))
    add_device_type(ios_profiles, "iPhone 11.simdevicetype",
                    "com.apple.CoreSimulator.SimDeviceType.iPhone-11", "iPhone 11", "iPhone12,1",
                    watch_companion=True)
    add_runtime(ios_profiles, "iOS.simruntime",
                "com.apple.CoreSimulator.SimRuntime.iOS-13-0", "iOS 13.0", "13.0")
    watch_profiles = os.path.join(developer, PROFILES.format("WatchOS"))
    add_runtime(watch_profiles, "watchOS.simruntime",
                "com.apple.CoreSimulator.SimRuntime.watchOS-6-0", "watchOS 6.0", "6.0")

    sdk = os.path.join(developer, "Platforms/iPhoneOS.platform/Developer/SDKs/iPhoneOS13.0.sdk")
    write_plist(os.path.join(sdk, "System/Library/CoreServices/SystemVersion.plist"), {"ProductVersion": "13.0"})
    os.makedirs(os.path.join(developer, "Platforms/iPhoneOS.platform/Developer/SDKs/iPhoneOS.sdk"))
    return app, developer


@pytest.fixture
def eula_accepted():
    with patch("services.xcode.check_eula", AsyncMock(return_value=True)) as mock_eula:
        yield mock_eula


class TestFromPath:
    """Tests for building an Xcode descriptor from disk."""

    @pytest.mark.asyncio
    async def test_reads_bundle(self, tmp_path, eula_accepted):
        _, developer = make_bundle(str(tmp_path))

        xcode = await Xcode.from_path(developer, selected=True, global_profiles_path=None)

        assert xcode.id == "11.0:11A420a"
        assert xcode.version == "11.0"
        assert xcode.selected is True
        assert xcode.eula_accepted is True
        assert list(xcode.sdks["ios"]) == ["13.0"]
        assert set(xcode.sim_runtimes) == {
            "com.apple.CoreSimulator.SimRuntime.iOS-13-0",
            "com.apple.CoreSimulator.SimRuntime.watchOS-6-0",
        }
        iphone = xcode.sim_device_types["com.apple.CoreSimulator.SimDeviceType.iPhone-11"]
        assert iphone.model == "iPhone12,1"
        assert iphone.supports_watch_companion is True
        assert xcode.executables["simulator"].endswith("Simulator.app/Contents/MacOS/Simulator")
        assert xcode.executables["watchsimulator"] == xcode.executables["simulator"]
        assert xcode.executables["simctl"] == "simctl"

    @pytest.mark.asyncio
    async def test_accepts_app_bundle_path(self, tmp_path, eula_accepted):
        app, developer = make_bundle(str(tmp_path))
        xcode = await Xcode.from_path(os.path.join(app, "Contents"), global_profiles_path=None)
        assert xcode.path == developer

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        with pytest.raises(ToolchainError, match="Directory does not exist"):
            await Xcode.from_path(str(tmp_path / "nope"))

    @pytest.mark.asyncio
    async def test_missing_xcodebuild(self, tmp_path):
        with pytest.raises(ToolchainError, match='"xcodebuild" not found'):
            await Xcode.from_path(str(tmp_path))

    @pytest.mark.asyncio
    async def test_too_old(self, tmp_path, eula_accepted):
        _, developer = make_bundle(str(tmp_path), ver="5.1.1")
        with pytest.raises(ToolchainError, match="too old"):
            await Xcode.from_path(developer, global_profiles_path=None)

    @pytest.mark.asyncio
    async def test_first_profile_writer_wins(self, tmp_path, eula_accepted):
        _, developer = make_bundle(str(tmp_path))
        global_profiles = str(tmp_path / "GlobalProfiles")
        add_device_type(global_profiles, "iPhone 11.simdevicetype",
                        "com.apple.CoreSimulator.SimDeviceType.iPhone-11", "Global iPhone 11", "iPhone12,1")

        xcode = await Xcode.from_path(developer, global_profiles_path=global_profiles)

        iphone = xcode.sim_device_types["com.apple.CoreSimulator.SimDeviceType.iPhone-11"]
        assert iphone.name == "Global iPhone 11"
        assert iphone.supports_watch_companion is False

    @pytest.mark.asyncio
    async def test_merges_simctl_only_runtimes(self, tmp_path, eula_accepted):
        _, developer = make_bundle(str(tmp_path))
        listing = SimctlListing(
            device_types=[{
                "identifier": "com.apple.CoreSimulator.SimDeviceType.iPhone-11-Pro",
                "name": "iPhone 11 Pro",
                "productFamily": "iPhone",
                "modelIdentifier": "iPhone12,3",
            }],
            runtimes=[
                {"identifier": "com.apple.CoreSimulator.SimRuntime.iOS-13-3", "name": "iOS 13.3", "version": "13.3"},
                {"identifier": "com.apple.CoreSimulator.SimRuntime.iOS-13-4", "name": "iOS 13.4",
                 "version": "13.4", "isAvailable": False},
            ],
        )

        xcode = await Xcode.from_path(developer, listing=listing, global_profiles_path=None)

        assert "com.apple.CoreSimulator.SimRuntime.iOS-13-3" in xcode.sim_runtimes
        assert "com.apple.CoreSimulator.SimRuntime.iOS-13-4" not in xcode.sim_runtimes
        pro = xcode.sim_device_types["com.apple.CoreSimulator.SimDeviceType.iPhone-11-Pro"]
        assert pro.supports_watch_companion is True

    @pytest.mark.asyncio
    async def test_eula_not_accepted(self, tmp_path):
        _, developer = make_bundle(str(tmp_path))
        result = ProcessResult(args=[], returncode=69, stdout="", stderr="license")
        with patch("services.process.run", AsyncMock(return_value=result)):
            xcode = await Xcode.from_path(developer, global_profiles_path=None)
        assert xcode.eula_accepted is False


class TestDiscovery:
    """Tests for finding Xcode installs."""

    def test_find_xcode_paths(self, tmp_path):
        _, developer = make_bundle(str(tmp_path), "Xcode.app")
        make_bundle(str(tmp_path), "Xcode-beta.app", ver="12.0", build="12A7209")
        os.makedirs(tmp_path / "Other.app")

        paths = find_xcode_paths([str(tmp_path), str(tmp_path / "missing")])

        assert len(paths) == 2
        assert os.path.realpath(developer) in paths

    def test_find_sdks_prefers_system_version(self, tmp_path):
        _, developer = make_bundle(str(tmp_path))
        assert find_sdks(developer, "iPhoneOS") == ["13.0"]
        assert find_sdks(developer, "WatchOS") == []

    @pytest.mark.asyncio
    async def test_detect_xcodes_skips_invalid_and_caches(self, tmp_path, eula_accepted):
        make_bundle(str(tmp_path), "Xcode.app")
        make_bundle(str(tmp_path), "Xcode-old.app", ver="4.6")
        cache = DetectionCache()

        with patch("services.xcode.get_selected_path", AsyncMock(return_value=None)) as mock_selected, \
             patch("services.xcode.XCODE_LOCATIONS", []):
            first = await detect_xcodes([str(tmp_path)], cache=cache)
            second = await detect_xcodes([str(tmp_path)], cache=cache)
            assert mock_selected.await_count == 1

            await detect_xcodes([str(tmp_path)], cache=cache, force=True)
            assert mock_selected.await_count == 2

        assert list(first) == ["11.0:11A420a"]
        assert second is first

    def test_newest(self):
        xcodes = [make_xcode("9.4", "9F2000"), make_xcode("11.0"), make_xcode("10.3", "10G8")]
        assert newest(xcodes).version == "11.0"
        assert newest([]) is None

    def test_runtime_platform(self):
        assert runtime_platform("com.apple.CoreSimulator.SimRuntime.iOS-13-0") == SimulatorType.IOS
        assert runtime_platform("com.apple.CoreSimulator.SimRuntime.watchOS-6-0") == SimulatorType.WATCHOS
        assert runtime_platform("com.apple.CoreSimulator.SimRuntime.tvOS-13-0") is None
