"""Simulator services."""

from .cache import DetectionCache, detection_cache
from .device_manager import DeviceManager
from .event_bus import EventBus, event_bus
from .session_controller import SessionController
from .simctl import SimctlGateway
from .simulator_catalog import SimulatorCatalog
from .simulator_resolver import SimulatorResolver
from .simulator_service import SimulatorService
from .xcode import Xcode, detect_xcodes
from . import version

__all__ = [
    'DetectionCache',
    'detection_cache',
    'DeviceManager',
    'EventBus',
    'event_bus',
    'SessionController',
    'SimctlGateway',
    'SimulatorCatalog',
    'SimulatorResolver',
    'SimulatorService',
    'Xcode',
    'detect_xcodes',
    'version',
]
