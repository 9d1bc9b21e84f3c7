"""Facade tying detection, resolution and sessions together."""

import dataclasses
import functools
import logging
from typing import Callable, Dict, List, Optional, Union

from exceptions import SessionError
from models import LaunchOptions, Resolution, SessionEvent, SimulatorConstraints, SimulatorRegistry

from .cache import DetectionCache, detection_cache
from .session_controller import SessionController
from .simctl import SimctlGateway
from .simulator_catalog import SimulatorCatalog
from .simulator_resolver import SimulatorResolver
from .xcode import Xcode, detect_xcodes

logger = logging.getLogger(__name__)


class SimulatorService:
    """Owns the detection cache, the resolver and the live sessions.

    Sessions are keyed by iOS Simulator UDID. Starting a second session for
    a UDID that already has a live one is allowed but logged, since both
    sessions will fight over the same simulator.
    """

    def __init__(self, search_paths: Optional[List[str]] = None,
                 cache: DetectionCache = detection_cache,
                 catalog: Optional[SimulatorCatalog] = None,
                 on_event: Optional[Callable[[SessionEvent], None]] = None):
        self.cache = cache
        self.catalog = catalog or SimulatorCatalog(cache=cache)
        self._detect = functools.partial(detect_xcodes, search_paths, cache=cache)
        self.resolver = SimulatorResolver(self.catalog, xcode_provider=self._detect)
        self.sessions: Dict[str, SessionController] = {}
        self._on_event = on_event

    async def detect_xcodes(self, force: bool = False) -> Dict[str, Xcode]:
        return await self._detect(force=force)

    async def list_simulators(self, force: bool = False) -> SimulatorRegistry:
        xcodes = await self._detect(force=force)
        return await self.catalog.build(xcodes, force=force)

    async def resolve(self, constraints: Optional[SimulatorConstraints] = None,
                      force: bool = False) -> Resolution:
        return await self.resolver.resolve(constraints, force=force)

    async def launch(self, target: Union[SimulatorConstraints, Resolution, str, None] = None,
                     options: Optional[LaunchOptions] = None) -> SessionController:
        """Resolve (unless given a Resolution) and launch a session.

        Args:
            target: A Resolution, SimulatorConstraints, or an iOS Simulator UDID
            options: Launch options; app_path and the watch flags also feed
                     the resolver constraints when target is not a Resolution

        Raises:
            Whatever resolve() or SessionController.launch() raise
        """
        options = options or LaunchOptions()
        if isinstance(target, Resolution):
            resolution = target
        else:
            if isinstance(target, SimulatorConstraints):
                constraints = target
            else:
                constraints = SimulatorConstraints(sim_handle_or_udid=target)
            constraints = dataclasses.replace(
                constraints,
                app_being_installed=constraints.app_being_installed or bool(options.app_path),
                watch_app_being_installed=(constraints.watch_app_being_installed
                                           or options.launch_watch_app
                                           or options.launch_watch_app_only),
            )
            resolution = await self.resolve(constraints)

        udid = resolution.sim_handle.udid
        existing = self.sessions.get(udid)
        if existing is not None and not existing.terminated:
            logger.warning(f"iOS Simulator {udid} already has a running session; starting another")

        simctl = resolution.xcode.executables.get("simctl") or "simctl"
        session = SessionController(
            resolution.sim_handle,
            resolution.watch_sim_handle,
            resolution.xcode,
            options,
            gateway=SimctlGateway(simctl),
        )
        if self._on_event is not None:
            session.on(None, self._on_event)
        self.sessions[udid] = session
        await session.launch()
        return session

    def get_session(self, udid: str) -> Optional[SessionController]:
        return self.sessions.get(udid)

    async def stop(self, udid: str) -> SessionController:
        session = self.sessions.get(udid)
        if session is None:
            raise SessionError(f"No session for iOS Simulator {udid}")
        await session.stop()
        return session

    async def stop_all(self) -> None:
        for udid, session in list(self.sessions.items()):
            if session.terminated:
                continue
            try:
                await session.stop()
            except Exception as e:
                logger.error(f"Failed to stop session for {udid}: {e}")

    def invalidate(self) -> None:
        """Drop every cached detection result."""
        self.cache.invalidate()
        logger.info("Detection cache invalidated")
