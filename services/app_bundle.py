"""Reads the bits of an .app bundle needed to install and launch it."""

import glob
import os
import plistlib
from dataclasses import dataclass, field
from typing import List

from exceptions import SessionError


@dataclass
class AppBundle:
    """An iOS or watchOS .app bundle."""
    path: str
    app_id: str
    app_name: str
    watch_apps: List["AppBundle"] = field(default_factory=list)

    @property
    def watch_app(self):
        return self.watch_apps[0] if self.watch_apps else None

    @classmethod
    def load(cls, path: str, scan_watch: bool = True) -> "AppBundle":
        """Read <path>/Info.plist and any embedded <path>/Watch/*.app bundles.

        Raises:
            SessionError: path is not a readable app bundle
        """
        path = os.path.abspath(os.path.expanduser(path))
        if not os.path.isdir(path):
            raise SessionError(f"App path does not exist: {path}")

        info_plist = os.path.join(path, "Info.plist")
        if not os.path.isfile(info_plist):
            raise SessionError(f"Unable to find Info.plist in root of specified app path: {info_plist}")
        try:
            with open(info_plist, "rb") as f:
                info = plistlib.load(f)
        except (OSError, plistlib.InvalidFileException, ValueError) as e:
            raise SessionError(f"Failed to parse app's Info.plist: {info_plist}") from e

        app_id = info.get("CFBundleIdentifier")
        if not app_id:
            raise SessionError(f"Info.plist has no CFBundleIdentifier: {info_plist}")
        app_name = info.get("CFBundleExecutable") or os.path.splitext(os.path.basename(path))[0]

        watch_apps = []
        if scan_watch:
            for watch_path in sorted(glob.glob(os.path.join(path, "Watch", "*.app"))):
                if os.path.isdir(watch_path):
                    watch_apps.append(cls.load(watch_path, scan_watch=False))

        return cls(path=path, app_id=app_id, app_name=app_name, watch_apps=watch_apps)
