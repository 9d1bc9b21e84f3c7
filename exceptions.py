"""Exception types raised by the simulator engine."""

from enum import Enum
from typing import List, Optional


class SimulatorError(Exception):
    """Base exception for simulator detection and session errors."""

    def to_dict(self) -> dict:
        return {
            "type": type(self).__name__,
            "message": str(self),
        }


class ToolchainError(SimulatorError):
    """An Xcode install is invalid, unsupported or missing."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class EulaNotAcceptedError(SimulatorError):
    """The selected Xcode has not had its license accepted."""

    def __init__(self, xcode_id: Optional[str] = None):
        super().__init__(
            "Xcode must be launched and the EULA must be accepted "
            "before the iOS Simulator can be used."
        )
        self.xcode_id = xcode_id


class NotFoundReason(str, Enum):
    """Why a resolution produced no simulator."""
    NO_SIMULATORS = "no_simulators"
    UDID_NOT_FOUND = "udid_not_found"
    WATCH_UDID_NOT_FOUND = "watch_udid_not_found"
    VERSION_NOT_FOUND = "version_not_found"
    NO_WATCH_COMPANION = "no_watch_companion"
    WATCH_NOT_SUPPORTED = "watch_not_supported"


class NotFoundError(SimulatorError):
    """No simulator satisfies the requested constraints."""

    def __init__(self, message: str, reason: NotFoundReason = NotFoundReason.NO_SIMULATORS):
        super().__init__(message)
        self.reason = reason

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["reason"] = self.reason.value
        return data


class SimctlError(SimulatorError):
    """A simctl invocation failed."""

    def __init__(self, message: str, args: Optional[List[str]] = None,
                 returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.command = list(args or [])
        self.returncode = returncode
        self.output = output

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["returncode"] = self.returncode
        data["command"] = self.command
        return data


class BootTimeoutError(SimulatorError):
    """The simulator never reported a booted state."""

    def __init__(self, udid: str, timeout: float):
        super().__init__(f'Simulator "{udid}" did not boot within {timeout:g} seconds')
        self.udid = udid
        self.timeout = timeout


class PairingError(SimulatorError):
    """The iOS and watchOS simulators could not be paired."""


class SessionError(SimulatorError):
    """Invalid session usage or an app bundle that cannot be launched."""


class SimulatorCrash(SimulatorError):
    """The app crashed inside the simulator."""

    def __init__(self, crash_files: Optional[List[str]] = None):
        super().__init__("App crashed in the iOS Simulator")
        self.crash_files = list(crash_files or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["crashFiles"] = self.crash_files
        return data


class InvalidParamsError(SimulatorError):
    """An RPC payload carried keys that map to no known field."""

    def __init__(self, message: str, keys: Optional[List[str]] = None):
        super().__init__(message)
        self.keys = list(keys or [])

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["keys"] = self.keys
        return data
