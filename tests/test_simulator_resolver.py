"""Tests for SimulatorResolver."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from exceptions import EulaNotAcceptedError, NotFoundError, NotFoundReason, ToolchainError
from models import SimulatorConstraints, SimulatorRegistry
from services import compatibility
from services.simulator_catalog import generate_registry
from services.simulator_resolver import SimulatorResolver
from tests.conftest import IPAD, IPHONE, WATCH, make_ios_sim, make_record, make_xcode

PAIRS = compatibility.freeze_table({
    "9.x": {"11.x": {}},
    "11.x": {"13.x": {"6.x": True}},
})


def xcodes_of(*xcodes):
    return {x.id: x for x in xcodes}


@pytest.fixture
def resolver():
    return SimulatorResolver(catalog=MagicMock(), xcode_provider=AsyncMock())


@pytest.fixture
def xcode_a():
    return make_xcode("9.0", "9A235", ios=("11.0",), watchos=(), pair_table=PAIRS)


@pytest.fixture
def xcode_b():
    return make_xcode("11.0", "11A420a", ios=("13.0",), watchos=("6.0",), pair_table=PAIRS)


@pytest.fixture
def two_xcodes(xcode_a, xcode_b):
    xcodes = xcodes_of(xcode_a, xcode_b)
    records = [
        make_record("IOS-11", IPHONE, "ios", "11.0"),
        make_record("IOS-13", IPHONE, "ios", "13.0"),
        make_record("WATCH-6", WATCH, "watchos", "6.0"),
    ]
    return xcodes, generate_registry(records, xcodes)


class TestSelectWithWatch:
    """Tests for selecting a phone and a watch companion."""

    def test_picks_only_xcode_that_can_pair(self, resolver, two_xcodes, xcode_b):
        xcodes, registry = two_xcodes

        result = resolver.select(SimulatorConstraints(watch_app_being_installed=True), xcodes, registry)

        assert result.sim_handle.udid == "IOS-13"
        assert result.watch_sim_handle.udid == "WATCH-6"
        assert result.xcode is xcode_b

    def test_watch_min_os_version_unmet(self, resolver, two_xcodes):
        xcodes, registry = two_xcodes
        constraints = SimulatorConstraints(watch_app_being_installed=True, watch_min_os_version="7.0")

        with pytest.raises(NotFoundError) as exc_info:
            resolver.select(constraints, xcodes, registry)

        assert "supports watchOS 7.0" in str(exc_info.value)
        assert exc_info.value.reason == NotFoundReason.NO_WATCH_COMPANION

    def test_explicit_sim_without_watch_support(self, resolver, xcode_b):
        xcodes = xcodes_of(xcode_b)
        registry = generate_registry([
            make_record("IPAD-13", IPAD, "ios", "13.0"),
            make_record("WATCH-6", WATCH, "watchos", "6.0"),
        ], xcodes)
        constraints = SimulatorConstraints(sim_handle_or_udid="IPAD-13", watch_app_being_installed=True)

        with pytest.raises(NotFoundError) as exc_info:
            resolver.select(constraints, xcodes, registry)

        assert str(exc_info.value) == 'Selected iOS Simulator with the UDID "IPAD-13" does not support watch apps.'
        assert exc_info.value.reason == NotFoundReason.WATCH_NOT_SUPPORTED

    def test_explicit_sim_without_legal_companion(self, resolver, two_xcodes):
        xcodes, registry = two_xcodes
        constraints = SimulatorConstraints(sim_handle_or_udid="IOS-11", watch_app_being_installed=True)

        with pytest.raises(NotFoundError) as exc_info:
            resolver.select(constraints, xcodes, registry)

        assert str(exc_info.value) == "Unable to find an iOS Simulator with a compatible Watch Simulator."

    def test_unknown_watch_udid(self, resolver, two_xcodes):
        xcodes, registry = two_xcodes
        constraints = SimulatorConstraints(watch_handle_or_udid="WATCH-404", watch_app_being_installed=True)

        with pytest.raises(NotFoundError, match='"WATCH-404"'):
            resolver.select(constraints, xcodes, registry)

    def test_explicit_watch_udid(self, resolver, xcode_b):
        xcodes = xcodes_of(xcode_b)
        records = [
            make_record("IOS-13", IPHONE, "ios", "13.0"),
            make_record("WATCH-A", WATCH, "watchos", "6.0"),
            make_record("WATCH-B", WATCH, "watchos", "6.0"),
        ]
        registry = generate_registry(records, xcodes)

        default = resolver.select(SimulatorConstraints(watch_app_being_installed=True), xcodes, registry)
        chosen = resolver.select(
            SimulatorConstraints(watch_app_being_installed=True, watch_handle_or_udid="WATCH-A"),
            xcodes, registry,
        )

        assert default.watch_sim_handle.udid == "WATCH-B"
        assert chosen.watch_sim_handle.udid == "WATCH-A"


class TestSelect:
    """Tests for selecting an iOS Simulator alone."""

    @pytest.mark.parametrize("udid", ["DEADBEEF-0000", "not-a-udid"])
    def test_unknown_udid_names_it(self, resolver, two_xcodes, udid):
        xcodes, registry = two_xcodes

        with pytest.raises(NotFoundError) as exc_info:
            resolver.select(SimulatorConstraints(sim_handle_or_udid=udid), xcodes, registry)

        assert udid in str(exc_info.value)
        assert exc_info.value.reason == NotFoundReason.UDID_NOT_FOUND

    def test_explicit_udid(self, resolver, two_xcodes, xcode_a):
        xcodes, registry = two_xcodes

        result = resolver.select(SimulatorConstraints(sim_handle_or_udid="IOS-11"), xcodes, registry)

        assert result.sim_handle.udid == "IOS-11"
        assert result.watch_sim_handle is None
        assert result.xcode is xcode_a

    def test_explicit_handle(self, resolver, two_xcodes):
        xcodes, registry = two_xcodes
        handle = registry.find_ios("IOS-13")

        result = resolver.select(SimulatorConstraints(sim_handle_or_udid=handle), xcodes, registry)

        assert result.sim_handle is handle

    def test_newest_version_first(self, resolver, two_xcodes):
        xcodes, registry = two_xcodes
        result = resolver.select(SimulatorConstraints(), xcodes, registry)
        assert result.sim_handle.udid == "IOS-13"

    def test_ios_version(self, resolver, two_xcodes, xcode_a):
        xcodes, registry = two_xcodes
        result = resolver.select(SimulatorConstraints(ios_version="11.0"), xcodes, registry)
        assert result.sim_handle.udid == "IOS-11"
        assert result.xcode is xcode_a

    def test_ios_version_not_found(self, resolver, two_xcodes):
        xcodes, registry = two_xcodes
        with pytest.raises(NotFoundError, match="running iOS 12.0"):
            resolver.select(SimulatorConstraints(ios_version="12.0"), xcodes, registry)

    def test_min_ios_version(self, resolver, two_xcodes):
        xcodes, registry = two_xcodes
        with pytest.raises(NotFoundError, match="iOS 14.0 or newer"):
            resolver.select(SimulatorConstraints(min_ios_version="14.0"), xcodes, registry)

    def test_family(self, resolver, xcode_b):
        xcodes = xcodes_of(xcode_b)
        records = [
            make_record("IOS-13", IPHONE, "ios", "13.0"),
            make_record("IPAD-13", IPAD, "ios", "13.0"),
        ]
        registry = generate_registry(records, xcodes)

        result = resolver.select(SimulatorConstraints(family="iphone"), xcodes, registry)
        assert result.sim_handle.udid == "IOS-13"

        with pytest.raises(NotFoundError, match='"watch" family'):
            resolver.select(SimulatorConstraints(family="watch"), xcodes, registry)

    def test_selected_xcode_preferred(self, resolver):
        older = make_xcode("11.0", "11A420a", ios=("13.0",), selected=True)
        newer = make_xcode("11.3", "11C29", ios=("13.0",))
        xcodes = xcodes_of(older, newer)
        registry = generate_registry([make_record("IOS-13", IPHONE, "ios", "13.0")], xcodes)

        result = resolver.select(SimulatorConstraints(), xcodes, registry)

        assert result.xcode is older

    def test_eula_not_accepted(self, resolver):
        xcode = make_xcode("11.0", eula_accepted=False)
        xcodes = xcodes_of(xcode)
        registry = generate_registry([make_record("IOS-13", IPHONE, "ios", "13.0")], xcodes)

        with pytest.raises(EulaNotAcceptedError, match="EULA must be accepted"):
            resolver.select(SimulatorConstraints(), xcodes, registry)

    def test_no_xcodes(self, resolver):
        with pytest.raises(ToolchainError):
            resolver.select(SimulatorConstraints(), {}, SimulatorRegistry())

    def test_no_simulators(self, resolver, xcode_b):
        with pytest.raises(NotFoundError, match="Unable to find an iOS Simulator."):
            resolver.select(SimulatorConstraints(), xcodes_of(xcode_b), SimulatorRegistry())

    def test_app_install_needs_supporting_xcode(self, resolver, xcode_b):
        xcodes = xcodes_of(xcode_b)
        registry = SimulatorRegistry(ios={"14.0": [make_ios_sim("IOS-14", "14.0")]})

        booted = resolver.select(SimulatorConstraints(sim_handle_or_udid="IOS-14"), xcodes, registry)
        assert booted.xcode is xcode_b

        constraints = SimulatorConstraints(sim_handle_or_udid="IOS-14", app_being_installed=True)
        with pytest.raises(ToolchainError, match='"IOS-14" \\(iOS 14.0\\) is not supported'):
            resolver.select(constraints, xcodes, registry)


class TestResolve:
    """Tests for the cached resolve() entry point."""

    @pytest.mark.asyncio
    async def test_resolve_uses_provider_and_catalog(self, two_xcodes):
        xcodes, registry = two_xcodes
        catalog = MagicMock()
        catalog.build = AsyncMock(return_value=registry)
        provider = AsyncMock(return_value=xcodes)
        resolver = SimulatorResolver(catalog=catalog, xcode_provider=provider)

        result = await resolver.resolve(SimulatorConstraints(ios_version="13.x"), force=True)

        assert result.sim_handle.udid == "IOS-13"
        provider.assert_awaited_once_with(force=True)
        catalog.build.assert_awaited_once_with(xcodes, force=True)

    def test_constraints_from_rpc_params(self):
        constraints = SimulatorConstraints.from_dict({
            "udid": "IOS-13",
            "watchUdid": "WATCH-6",
            "iosVersion": "13.0",
            "watchAppBeingInstalled": True,
        })

        assert constraints.sim_handle_or_udid == "IOS-13"
        assert constraints.watch_handle_or_udid == "WATCH-6"
        assert constraints.ios_version == "13.0"
        assert constraints.watch_app_being_installed is True

    def test_constraints_with_acronym_keys(self):
        constraints = SimulatorConstraints.from_dict({
            "simHandleOrUDID": "IOS-13",
            "watchHandleOrUDID": "WATCH-6",
            "minIOSVersion": "13.0",
            "watchMinOSVersion": "6.0",
        })

        assert constraints == SimulatorConstraints(
            sim_handle_or_udid="IOS-13",
            watch_handle_or_udid="WATCH-6",
            min_ios_version="13.0",
            watch_min_os_version="6.0",
        )
