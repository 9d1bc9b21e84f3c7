"""Pick the Xcode, iOS Simulator and optional Watch Simulator to launch.

Selection without an explicit UDID is greedy:
  1. Rank the Xcodes: an SDK matching the requested iOS version first, then
     the selected Xcode (xcode-select), then the newest.
  2. For each Xcode, walk its simulator versions newest to oldest and take
     the first simulator that satisfies every constraint.

Whatever wins, the winning Xcode must have its license accepted. A match
under an unaccepted Xcode is an error, not a reason to fall back to a
worse match.
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional, Union

from exceptions import EulaNotAcceptedError, NotFoundError, NotFoundReason, ToolchainError
from models import (
    IosSimulator, Resolution, SimulatorConstraints, SimulatorHandle,
    SimulatorRegistry, WatchSimulator,
)

from . import version
from .simulator_catalog import SimulatorCatalog
from .xcode import Xcode, detect_xcodes

logger = logging.getLogger(__name__)

XcodeProvider = Callable[..., Awaitable[Dict[str, Xcode]]]


def _udid(handle_or_udid: Union[str, SimulatorHandle, None]) -> Optional[str]:
    if handle_or_udid is None:
        return None
    if isinstance(handle_or_udid, SimulatorHandle):
        return handle_or_udid.udid
    return str(handle_or_udid)


class SimulatorResolver:
    """Resolves SimulatorConstraints to a concrete Resolution."""

    def __init__(self,
                 catalog: Optional[SimulatorCatalog] = None,
                 xcode_provider: XcodeProvider = detect_xcodes):
        self.catalog = catalog or SimulatorCatalog()
        self._xcode_provider = xcode_provider

    async def resolve(self, constraints: Optional[SimulatorConstraints] = None,
                      force: bool = False) -> Resolution:
        """Detect Xcodes and simulators (cached) and pick the best match.

        Raises:
            ToolchainError: no Xcode is installed
            NotFoundError: nothing satisfies the constraints
            EulaNotAcceptedError: the winning Xcode's license is not accepted
        """
        xcodes = await self._xcode_provider(force=force)
        registry = await self.catalog.build(xcodes, force=force)
        return self.select(constraints or SimulatorConstraints(), xcodes, registry)

    # =========================================================================
    # Selection
    # =========================================================================

    def select(self, constraints: SimulatorConstraints,
               xcodes: Dict[str, Xcode],
               registry: SimulatorRegistry) -> Resolution:
        """Pick a simulator from an already-built registry."""
        if not xcodes:
            raise ToolchainError("No Xcode installs found")
        if not registry.ios_handles():
            raise NotFoundError("Unable to find an iOS Simulator.", NotFoundReason.NO_SIMULATORS)

        ranked = self.rank_xcodes(xcodes, constraints)
        watch_udid = _udid(constraints.watch_handle_or_udid)
        if constraints.watch_app_being_installed and watch_udid and registry.find_watch(watch_udid) is None:
            raise NotFoundError(
                f'Unable to find a Watch Simulator with the UDID "{watch_udid}".',
                NotFoundReason.WATCH_UDID_NOT_FOUND,
            )

        sim_udid = _udid(constraints.sim_handle_or_udid)
        if sim_udid:
            return self._select_explicit(sim_udid, constraints, ranked, registry)
        return self._select_auto(constraints, ranked, registry)

    def rank_xcodes(self, xcodes: Dict[str, Xcode], constraints: SimulatorConstraints) -> List[Xcode]:
        wanted = constraints.ios_version

        def key(xcode: Xcode):
            sdk_match = bool(wanted) and any(version.satisfies(sdk, wanted) for sdk in xcode.sdks.get("ios", ()))
            return sdk_match, xcode.selected, version.parse(xcode.version)

        return sorted(xcodes.values(), key=key, reverse=True)

    def _select_explicit(self, udid: str, c: SimulatorConstraints,
                         ranked: List[Xcode], registry: SimulatorRegistry) -> Resolution:
        sim = registry.find_ios(udid)
        if sim is None:
            raise NotFoundError(
                f'Unable to find an iOS Simulator with the UDID "{udid}".',
                NotFoundReason.UDID_NOT_FOUND,
            )

        candidates = [x for x in ranked if sim.supports_xcode.get(x.id)]
        if not candidates:
            # Booting is fine under any Xcode; installing needs one that supports the runtime
            if c.app_being_installed:
                raise ToolchainError(
                    f'iOS Simulator "{udid}" (iOS {sim.version}) is not supported by any '
                    f'installed Xcode, unable to install the app.'
                )
            candidates = ranked
        if not c.watch_app_being_installed:
            return self._finish(sim, None, candidates[0])

        if not any(sim.supports_watch.get(x.id) for x in candidates):
            raise NotFoundError(
                f'Selected iOS Simulator with the UDID "{udid}" does not support watch apps.',
                NotFoundReason.WATCH_NOT_SUPPORTED,
            )
        for xcode in candidates:
            watch = self.pick_watch(sim, xcode, c, registry)
            if watch is not None:
                return self._finish(sim, watch, xcode)
        raise self._watch_error(c)

    def _select_auto(self, c: SimulatorConstraints, ranked: List[Xcode],
                     registry: SimulatorRegistry) -> Resolution:
        matched_any = False
        for xcode in ranked:
            for ver in self._versions_for(xcode, c, registry):
                sims = [
                    s for s in registry.ios[ver]
                    if s.supports_xcode.get(xcode.id) and (not c.family or s.family == c.family)
                ]
                if not sims:
                    continue
                matched_any = True
                if not c.watch_app_being_installed:
                    return self._finish(sims[0], None, xcode)

                # Simulators that can pair under this Xcode go first
                sims.sort(key=lambda s: not s.supports_watch.get(xcode.id))
                for sim in sims:
                    watch = self.pick_watch(sim, xcode, c, registry)
                    if watch is not None:
                        return self._finish(sim, watch, xcode)

        if matched_any and c.watch_app_being_installed:
            raise self._watch_error(c)
        if c.ios_version:
            raise NotFoundError(
                f"Unable to find an iOS Simulator running iOS {c.ios_version}.",
                NotFoundReason.VERSION_NOT_FOUND,
            )
        if c.min_ios_version:
            raise NotFoundError(
                f"Unable to find an iOS Simulator running iOS {c.min_ios_version} or newer.",
                NotFoundReason.VERSION_NOT_FOUND,
            )
        if c.family:
            raise NotFoundError(f'Unable to find an iOS Simulator of the "{c.family}" family.')
        raise NotFoundError("Unable to find an iOS Simulator.")

    def _versions_for(self, xcode: Xcode, c: SimulatorConstraints,
                      registry: SimulatorRegistry) -> List[str]:
        """iOS simulator versions usable with this Xcode, newest first."""
        versions = []
        for ver, sims in registry.ios.items():
            if not any(s.supports_xcode.get(xcode.id) for s in sims):
                continue
            if c.ios_version and not version.satisfies(ver, c.ios_version):
                continue
            if c.min_ios_version and version.lt(ver, c.min_ios_version):
                continue
            versions.append(ver)
        return version.sort_versions(versions, reverse=True)

    def pick_watch(self, sim: IosSimulator, xcode: Xcode, c: SimulatorConstraints,
                   registry: SimulatorRegistry) -> Optional[WatchSimulator]:
        """Best companion watch for sim under xcode: the last one in catalog order."""
        if not sim.supports_watch.get(xcode.id):
            return None
        companions = sim.watch_companion.get(xcode.id) or []
        watch_udid = _udid(c.watch_handle_or_udid)

        best = None
        for watch in registry.watch_handles():
            if watch.udid not in companions:
                continue
            if watch_udid and watch.udid != watch_udid:
                continue
            if c.watch_min_os_version and version.lt(watch.version, c.watch_min_os_version):
                continue
            best = watch
        return best

    def _watch_error(self, c: SimulatorConstraints) -> NotFoundError:
        if c.watch_min_os_version:
            message = (f"Unable to find an iOS Simulator with a Watch Simulator that supports "
                       f"watchOS {c.watch_min_os_version}.")
        else:
            message = "Unable to find an iOS Simulator with a compatible Watch Simulator."
        return NotFoundError(message, NotFoundReason.NO_WATCH_COMPANION)

    def _finish(self, sim: IosSimulator, watch: Optional[WatchSimulator], xcode: Xcode) -> Resolution:
        if not xcode.eula_accepted:
            raise EulaNotAcceptedError(xcode.id)
        logger.info(f"Selected iOS Simulator {sim.name} ({sim.udid}, iOS {sim.version}) "
                    f"with Xcode {xcode.id}"
                    + (f" and Watch Simulator {watch.name} ({watch.udid})" if watch else ""))
        return Resolution(sim_handle=sim, watch_sim_handle=watch, xcode=xcode)
