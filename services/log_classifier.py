"""Classifies simulator log lines.

The simulator has no event protocol, so app output, auto-exit markers and
crashes are all recognised by pattern matching log lines. Every pattern
lives here so the set can be changed without touching the session state
machine.

Crash patterns are best effort. Each was observed with a particular Xcode
era and none is guaranteed to fire on every OS version:
  - "*** Terminating app" printed by the app itself (uncaught exception)
  - SpringBoard "Application '...:<appid>[...]' crashed" (iOS 8 - 10)
  - launchd_sim "UIKitApplication:<appid>[...] ... Service exited due to"
  - Carousel "Application '...:<appid>[...]' crashed" (watchOS)
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


class LogKind(str, Enum):
    APP_LOG = "app-log"
    AUTO_EXIT = "auto-exit"
    CRASH = "crash"
    OTHER = "other"


class LogLevel(str, Enum):
    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


@dataclass
class LogClassification:
    kind: LogKind
    message: str
    pid: Optional[int] = None
    level: Optional[LogLevel] = None

    @property
    def is_error(self) -> bool:
        return self.level in (LogLevel.ERROR, LogLevel.FATAL)


_LEVEL_RE = re.compile(r"^\[(TRACE|DEBUG|INFO|WARN|WARNING|ERROR|FATAL|CRITICAL)\]\s*(.*)$", re.I)
_TERMINATING_RE = re.compile(r"^\*\*\* Terminating app")


class LogClassifier:
    """Pattern set for one app.

    Args:
        app_name: CFBundleExecutable of the app (the process name in logs)
        app_id: Bundle identifier
        auto_exit_token: Marker the app prints when it wants to be stopped
        watch_app_id: Bundle identifier of the watch app, if any
    """

    def __init__(self, app_name: str, app_id: Optional[str] = None,
                 auto_exit_token: Optional[str] = "AUTO_EXIT",
                 watch_app_id: Optional[str] = None):
        self.app_name = app_name
        self.app_id = app_id
        self.auto_exit_token = auto_exit_token
        self.watch_app_id = watch_app_id

        name = re.escape(app_name)
        self._app_log_re = re.compile(rf"(?:^|\s){name}\[(\d+)(?::[0-9a-fA-Fx]+)?\]:?\s(.*)$")
        self._crash_res: List[re.Pattern] = []
        if app_id:
            appid = re.escape(app_id)
            self._crash_res.append(
                re.compile(rf"\sSpringBoard\[(\d+)\]: Application '.*:{appid}\[(\w+)\]' crashed"))
            self._crash_res.append(
                re.compile(rf"launchd_sim\[(\d+)\] \(UIKitApplication:{appid}\[(\w+)\](?:\[\w+\])*\)"
                           rf".*Service exited (?:due to|with abnormal code)"))
        carousel_id = watch_app_id or app_id
        if carousel_id:
            self._crash_res.append(
                re.compile(rf"\sCarousel\[(\d+)\]: Application '.*:{re.escape(carousel_id)}\[(\w+)\]' crashed"))

    def crash_file_pattern(self) -> re.Pattern:
        """Names of crash reports written for this app."""
        return re.compile(rf"^{re.escape(self.app_name)}[_-]\d{{4}}-\d{{2}}-\d{{2}}-\d{{6}}.*\.(?:crash|ips)$")

    def classify_system_line(self, line: str) -> LogClassification:
        """Classify a line from the simulator's system.log."""
        for crash_re in self._crash_res:
            m = crash_re.search(line)
            if m:
                return LogClassification(LogKind.CRASH, line, pid=int(m.group(1)))

        m = self._app_log_re.search(line)
        if m:
            result = self.classify_app_message(m.group(2))
            result.pid = int(m.group(1))
            return result
        return LogClassification(LogKind.OTHER, line)

    def classify_app_message(self, message: str) -> LogClassification:
        """Classify a line the app wrote itself (system log, relay or log file)."""
        message = message.rstrip("\r\n")
        level = None
        m = _LEVEL_RE.match(message)
        if m:
            name = m.group(1).upper()
            level = {"WARNING": LogLevel.WARN, "CRITICAL": LogLevel.FATAL}.get(name) or LogLevel(name.lower())

        if _TERMINATING_RE.match(message):
            return LogClassification(LogKind.CRASH, message, level=level)
        if self.auto_exit_token and self.auto_exit_token in message:
            return LogClassification(LogKind.AUTO_EXIT, message, level=level)
        return LogClassification(LogKind.APP_LOG, message, level=level)
