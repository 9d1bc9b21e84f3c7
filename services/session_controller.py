"""Simulator session controller.

Drives one iOS Simulator (plus optional Watch Simulator) through a launch:

    stop existing -> pair -> boot phone -> boot watch -> focus/hide ->
    uninstall -> install app -> install watch app -> wait for watch sync ->
    launch watch app -> launch app -> connect log relay -> find log file

Each phase is an async step run in that order. Once the app is running,
the system log tail, log relay, log file tail and simulator process watcher
run as background tasks. Any of them may end the session (auto-exit token,
crash, process exit), as may stop(); the terminal event (app-quit, exit or
error) is emitted exactly once no matter how many of them fire.

Events are SessionEvent records; subscribe with on().
"""

import asyncio
import dataclasses
import glob
import logging
import os
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set

from exceptions import BootTimeoutError, PairingError, SessionError, SimctlError, SimulatorCrash
from models import (
    IosSimulator, LaunchOptions, SessionEvent, SessionEventType, SessionState,
    SimctlListing, WatchSimulator,
)

from . import process, version
from .app_bundle import AppBundle
from .log_classifier import LogClassification, LogClassifier, LogKind
from .log_tail import LogTail
from .simctl import SimctlGateway, is_already_booted, is_pair_already_active
from .xcode import Xcode

logger = logging.getLogger(__name__)

# Configuration
CRASH_REPORTS_DIR = "~/Library/Logs/DiagnosticReports"
STOP_POLL_INTERVAL = 0.25
STOP_POLL_TRIES = 40
MIN_RUN_TIME = 0.25  # Seconds a freshly started simulator gets before it may be killed
RELAY_HOST = "127.0.0.1"

# From Xcode 9, simctl boots devices and the phone pushes the watch app
SIMCTL_BOOT_MIN_XCODE = "9"

# watchOS 1.0 is rendered by the iOS Simulator and never pairs
PAIRING_MIN_WATCHOS = "2.0"

_NOT_INSTALLED_MARKERS = ("not installed", "No such file", "not found")

EventListener = Callable[[SessionEvent], None]


class SessionController:
    """Owns one simulator launch and everything it starts.

    Usage:
        session = SessionController(sim, watch, xcode, LaunchOptions(app_path=...))
        session.on(SessionEventType.LOG, print_line)
        await session.launch()
        event = await session.wait()
    """

    def __init__(self, sim_handle: IosSimulator,
                 watch_handle: Optional[WatchSimulator] = None,
                 xcode: Optional[Xcode] = None,
                 options: Optional[LaunchOptions] = None,
                 gateway: Optional[SimctlGateway] = None,
                 crash_dir: str = CRASH_REPORTS_DIR):
        self.sim_handle = sim_handle
        self.watch_handle = watch_handle
        self.xcode = xcode
        self.options = options or LaunchOptions()
        self.gateway = gateway or SimctlGateway(sim_handle.simctl or "simctl")
        self.crash_dir = os.path.expanduser(crash_dir)

        self.state = SessionState.IDLE
        self.app: Optional[AppBundle] = None
        self.classifier: Optional[LogClassifier] = None
        self.app_started = False

        self._listeners: Dict[Optional[SessionEventType], List[EventListener]] = {}
        self._launched = False
        self._terminated = False
        self._terminal_event: Optional[SessionEvent] = None
        self._done = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._tails: List[LogTail] = []
        self._processes: List[asyncio.subprocess.Process] = []
        self._crash_snapshot: Set[str] = set()
        self._crash_task: Optional[asyncio.Task] = None
        self._relay_writer: Optional[asyncio.StreamWriter] = None
        self._relay_connected = False
        self._stopped_existing = False

    # =========================================================================
    # Events
    # =========================================================================

    def on(self, event_type: Optional[SessionEventType], listener: EventListener) -> None:
        """Subscribe to one event type, or to every event with None."""
        self._listeners.setdefault(event_type, []).append(listener)

    def off(self, event_type: Optional[SessionEventType], listener: EventListener) -> None:
        listeners = self._listeners.get(event_type, [])
        if listener in listeners:
            listeners.remove(listener)

    def _emit(self, event_type: SessionEventType, **kwargs) -> SessionEvent:
        event = SessionEvent(type=event_type, udid=self.sim_handle.udid, **kwargs)
        for listener in self._listeners.get(event_type, []) + self._listeners.get(None, []):
            try:
                listener(event)
            except Exception as e:
                logger.exception(f"Session listener error for {event_type.value}: {e}")
        return event

    def _debug(self, message: str) -> None:
        logger.debug(f"[{self.sim_handle.udid}] {message}")
        self._emit(SessionEventType.LOG_DEBUG, message=message)

    def _set_state(self, state: SessionState) -> None:
        if state != self.state:
            logger.debug(f"[{self.sim_handle.udid}] {self.state.value} -> {state.value}")
            self.state = state

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def terminal_event(self) -> Optional[SessionEvent]:
        return self._terminal_event

    def to_dict(self) -> dict:
        return {
            "udid": self.sim_handle.udid,
            "state": self.state.value,
            "appStarted": self.app_started,
            "terminated": self._terminated,
            "appId": self.app.app_id if self.app else None,
            "simHandle": self.sim_handle.to_dict(),
            "watchSimHandle": self.watch_handle.to_dict() if self.watch_handle else None,
            "xcode": self.xcode.id if self.xcode else None,
            "terminalEvent": self._terminal_event.to_dict() if self._terminal_event else None,
        }

    async def wait(self) -> Optional[SessionEvent]:
        """Wait for the session to end and return its terminal event."""
        await self._done.wait()
        return self._terminal_event

    # =========================================================================
    # Public API
    # =========================================================================

    async def launch(self) -> "SessionController":
        """Run every launch phase in order.

        Raises:
            SessionError: bad options/app bundle, or the session was already launched
            SimctlError, BootTimeoutError, PairingError: a phase failed; the
                session has been torn down and an error event emitted
        """
        if self._launched:
            raise SessionError("Session has already been launched")
        self._launched = True
        self._prepare()
        self._crash_snapshot = await asyncio.to_thread(self._list_crash_files)

        try:
            for state, phase in self._phases():
                if self._terminated:
                    break
                self._set_state(state)
                await phase()
        except asyncio.CancelledError:
            logger.info(f"Launch of {self.sim_handle.udid} interrupted, stopping")
            await asyncio.shield(self.stop())
            raise
        except Exception as e:
            if self._terminated:
                logger.debug(f"Launch ended after session stop: {e}")
                return self
            logger.error(f"Launch of {self.sim_handle.udid} failed: {e}")
            await self._finish(SessionEventType.ERROR, stop_simulator=True, error=e)
            raise
        return self

    async def stop(self) -> None:
        """Stop the simulator and end the session.

        Returns once the simulator processes are confirmed gone.
        """
        if not self._terminated:
            await self._finish(SessionEventType.EXIT, stop_simulator=True)
        else:
            await self._stop_simulators()
        self._emit(SessionEventType.STOPPED)

    def _phases(self) -> List[tuple]:
        return [
            (SessionState.STOPPING, self._stop_existing),
            (SessionState.PAIRING, self.pair),
            (SessionState.BOOTING, self._boot_phone),
            (SessionState.BOOTING, self._boot_watch),
            (SessionState.BOOTED, self._focus_or_hide),
            (SessionState.INSTALLING, self._uninstall),
            (SessionState.INSTALLING, self._install_app),
            (SessionState.INSTALLING, self._install_watch_app),
            (SessionState.INSTALLING, self._wait_for_watch_sync),
            (SessionState.LAUNCHING, self._launch_watch_app),
            (SessionState.LAUNCHING, self._launch_app),
            (SessionState.RUNNING, self._connect_log_relay),
            (SessionState.RUNNING, self._find_log_file),
        ]

    def _prepare(self) -> None:
        opts = self.options
        if (opts.launch_watch_app or opts.launch_watch_app_only) and not opts.app_path:
            flag = "launch_watch_app_only" if opts.launch_watch_app_only else "launch_watch_app"
            raise SessionError(f"You must specify an app_path when {flag} is true.")
        if not self.sim_handle.simulator:
            raise SessionError(f"Unable to find the Simulator app for {self.sim_handle.udid}")

        if opts.app_path:
            self.app = AppBundle.load(opts.app_path)
            if (opts.launch_watch_app or opts.launch_watch_app_only) and not self.app.watch_apps:
                raise SessionError(f"No watch app found in {self.app.path}")
            watch_app = self.app.watch_app
            self.classifier = LogClassifier(
                self.app.app_name,
                self.app.app_id,
                auto_exit_token=opts.auto_exit_token if opts.auto_exit else None,
                watch_app_id=watch_app.app_id if watch_app else None,
            )

    def _uses_simctl_boot(self) -> bool:
        return self.xcode is None or version.gte(self.xcode.version, SIMCTL_BOOT_MIN_XCODE)

    def _watch_needs_pairing(self) -> bool:
        return (self.watch_handle is not None
                and version.gte(self.watch_handle.version, PAIRING_MIN_WATCHOS))

    # =========================================================================
    # Phase: stop existing
    # =========================================================================

    async def _stop_existing(self) -> None:
        if not self.options.kill_if_running:
            return
        if await self._stop_simulators():
            self._stopped_existing = True

    def _simulator_executables(self) -> List[str]:
        executables = [self.sim_handle.simulator]
        if self.watch_handle is not None and self.watch_handle.simulator:
            executables.append(self.watch_handle.simulator)
        return [e for i, e in enumerate(executables) if e and e not in executables[:i]]

    async def _stop_simulators(self) -> bool:
        """Kill every simulator process for this session, then wait until gone.

        Returns:
            True if any process was killed
        """
        handles = [h for h in (self.sim_handle, self.watch_handle) if h is not None]
        for handle in handles:
            if handle.running and handle.start_time is not None:
                elapsed = time.monotonic() - handle.start_time
                if elapsed < MIN_RUN_TIME:
                    await asyncio.sleep(MIN_RUN_TIME - elapsed)

        for proc in self._processes:
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass

        killed = False
        for executable in self._simulator_executables():
            pids = await process.find_pids(executable)
            if not pids:
                continue
            self._debug(f"Stopping {executable} (pid {', '.join(map(str, pids))})")
            for pid in pids:
                killed = process.kill(pid) or killed
            for _ in range(STOP_POLL_TRIES):
                if not await process.find_pids(executable):
                    break
                await asyncio.sleep(STOP_POLL_INTERVAL)
            else:
                raise SessionError(f"Timed out waiting for {executable} to stop")

        for proc in self._processes:
            if proc.returncode is None:
                try:
                    await asyncio.wait_for(proc.wait(), STOP_POLL_INTERVAL * STOP_POLL_TRIES)
                except asyncio.TimeoutError:
                    logger.warning(f"Simulator process {proc.pid} did not exit")

        for handle in handles:
            handle.running = False
        return killed

    # =========================================================================
    # Phase: pairing
    # =========================================================================

    async def pair(self) -> Optional[WatchSimulator]:
        """Make sure the watch simulator is paired with, and active for, the phone.

        May switch self.watch_handle to an equivalent watch simulator when the
        resolved one is stuck paired to another phone.

        Returns:
            The watch handle that ends up paired (or None without a watch)
        """
        if not self._watch_needs_pairing():
            return self.watch_handle

        phone = self.sim_handle
        watch = self.watch_handle
        listing = await self.gateway.list()
        if await self._activate_existing(listing, watch):
            return watch

        for stale in listing.pairs_for_watch(watch.udid):
            if stale.phone_udid == phone.udid:
                continue
            self._debug(f"Unpairing Watch Simulator {watch.udid} from iOS Simulator {stale.phone_udid}")
            try:
                await self.gateway.unpair(stale.pair_id)
            except SimctlError as e:
                self._debug(f"Unable to unpair Watch Simulator {watch.udid}: {e}")
                watch = await self._alternate_watch(listing, watch)
                self.watch_handle = watch
                if await self._activate_existing(listing, watch):
                    return watch
                break

        self._debug(f"Pairing Watch Simulator {watch.udid} with iOS Simulator {phone.udid}")
        try:
            pair_id = await self.gateway.pair(watch.udid, phone.udid)
        except SimctlError as e:
            raise PairingError(
                f"Unable to pair Watch Simulator {watch.udid} with iOS Simulator {phone.udid}: {e}"
            ) from e
        await self._activate(pair_id)
        return watch

    async def _activate_existing(self, listing: SimctlListing, watch: WatchSimulator) -> bool:
        existing = listing.ios_sim_to_watch_sim_to_pair.get(self.sim_handle.udid, {}).get(watch.udid)
        if existing is None:
            return False
        if existing.active:
            self._debug(f"Watch Simulator {watch.udid} is already paired and active")
        else:
            self._debug(f"Activating existing pair {existing.pair_id}")
            await self._activate(existing.pair_id)
        return True

    async def _activate(self, pair_id: str) -> None:
        try:
            await self.gateway.activate_pair(pair_id)
        except SimctlError as e:
            if is_pair_already_active(e):
                return
            raise PairingError(f"Unable to activate simulator pair {pair_id}: {e}") from e

    async def _alternate_watch(self, listing: SimctlListing, original: WatchSimulator) -> WatchSimulator:
        """Find, or create, an unpaired watch simulator like the original."""
        for runtime, row in listing.iter_devices():
            udid = row.get("udid")
            if (udid and udid != original.udid
                    and runtime == original.runtime
                    and row.get("deviceTypeIdentifier") == original.device_type
                    and row.get("isAvailable") is not False
                    and not listing.pairs_for_watch(udid)):
                self._debug(f"Using unpaired Watch Simulator {udid} instead of {original.udid}")
                return self._clone_watch(original, udid, row.get("name", original.name))

        if not self.options.allow_watch_creation:
            raise PairingError(
                f"Watch Simulator {original.udid} is paired with another iOS Simulator "
                f"and no unpaired {original.device_name} ({original.runtime_name}) exists"
            )

        name = f"{original.device_name} ({original.runtime_name})"
        logger.warning(f"Creating Watch Simulator \"{name}\" to pair with {self.sim_handle.udid}")
        try:
            udid = await self.gateway.create(name, original.device_type, original.runtime)
        except SimctlError as e:
            raise PairingError(f"Unable to find or create a Watch Simulator to pair with: {e}") from e
        self._debug(f"Created Watch Simulator {udid}")
        return self._clone_watch(original, udid, name)

    @staticmethod
    def _clone_watch(original: WatchSimulator, udid: str, name: str) -> WatchSimulator:
        device_dir = os.path.join(os.path.dirname(original.device_dir), udid) if original.device_dir else None
        system_log = None
        if original.system_log:
            system_log = os.path.join(os.path.dirname(os.path.dirname(original.system_log)), udid, "system.log")
        return dataclasses.replace(
            original,
            udid=udid,
            name=name,
            device_dir=device_dir,
            data_dir=os.path.join(device_dir, "data") if device_dir else None,
            system_log=system_log,
            state=None,
            supports_xcode=dict(original.supports_xcode),
            running=False,
            start_time=None,
            installing=False,
            installed=False,
        )

    # =========================================================================
    # Phase: boot
    # =========================================================================

    async def _boot_phone(self) -> None:
        await self._boot(self.sim_handle, spawn_app=True)
        self._start_system_log_tail()
        self._emit(SessionEventType.LAUNCHED, sim_handle=self.sim_handle,
                   watch_sim_handle=self.watch_handle)

    async def _boot_watch(self) -> None:
        if not self._watch_needs_pairing():
            return
        # Pre-Xcode 9 watches run in their own Simulator (Watch) app
        separate_app = self.watch_handle.simulator not in (None, self.sim_handle.simulator)
        await self._boot(self.watch_handle, spawn_app=separate_app)

    async def _boot(self, handle, spawn_app: bool) -> None:
        use_simctl = self._uses_simctl_boot()
        state = None
        try:
            state = (await self.gateway.list()).device_state(handle.udid)
        except SimctlError as e:
            self._debug(f"Unable to query state of {handle.udid}: {e}")

        if state not in (None, "Shutdown") and (state != "Booted" or self._stopped_existing or not use_simctl):
            self._debug(f"Shutting down {handle.udid} (state: {state})")
            try:
                await self.gateway.shutdown(handle.udid)
            except SimctlError as e:
                self._debug(f"Shutdown of {handle.udid} failed: {e}")
            state = "Shutdown"

        if use_simctl and state != "Booted":
            self._debug(f"Booting {handle.name} ({handle.udid})")
            try:
                await self.gateway.boot(handle.udid)
            except SimctlError as e:
                if not is_already_booted(e):
                    raise

        if spawn_app:
            self._debug(f"Running {handle.simulator} -CurrentDeviceUDID {handle.udid}")
            proc = await process.spawn_detached(handle.simulator, "-CurrentDeviceUDID", handle.udid)
            self._processes.append(proc)
            self._spawn(self._watch_process(proc))

        handle.running = True
        handle.start_time = time.monotonic()
        await self._wait_until_booted(handle)

    async def _wait_until_booted(self, handle) -> None:
        """Poll simctl until the device reports Booted.

        Raises:
            BootTimeoutError: not booted within options.boot_timeout
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.options.boot_timeout
        while True:
            if self._terminated:
                raise SessionError("Session stopped while booting")
            try:
                listing = await self.gateway.list(max_tries=1)
                if listing.device_state(handle.udid) == "Booted":
                    self._debug(f"{handle.name} ({handle.udid}) booted")
                    handle.state = "Booted"
                    return
            except SimctlError as e:
                self._debug(f"Boot status check failed: {e}")
            if loop.time() >= deadline:
                raise BootTimeoutError(handle.udid, self.options.boot_timeout)
            await asyncio.sleep(self.options.boot_poll_interval)

    async def _focus_or_hide(self) -> None:
        opts = self.options
        app_name = os.path.basename(self.sim_handle.simulator)
        if opts.focus or (opts.focus is None and not opts.hide and not opts.auto_exit):
            script = f'tell application "{app_name}" to activate'
        elif opts.hide:
            script = f'tell application "System Events" to set visible of process "{app_name}" to false'
        else:
            return
        try:
            result = await process.run("osascript", "-e", script)
            if result.returncode != 0:
                self._debug(f"osascript failed: {result.output}")
        except OSError as e:
            self._debug(f"Unable to run osascript: {e}")

    # =========================================================================
    # Phase: install
    # =========================================================================

    async def _uninstall(self) -> None:
        if not (self.app and self.options.uninstall_app):
            return
        self._debug(f"Uninstalling {self.app.app_id}")
        try:
            await self.gateway.uninstall(self.sim_handle.udid, self.app.app_id)
        except SimctlError as e:
            if not any(marker in e.output for marker in _NOT_INSTALLED_MARKERS):
                raise
            self._debug(f"{self.app.app_id} was not installed")

    async def _install_app(self) -> None:
        if not self.app:
            return
        await asyncio.to_thread(self._remove_stale_log_files)
        handle = self.sim_handle
        self._debug(f"Installing {self.app.path}")
        handle.installing = True
        try:
            await self.gateway.install(handle.udid, self.app.path)
        finally:
            handle.installing = False
        handle.installed = True

    async def _install_watch_app(self) -> None:
        # Newer Xcodes push the embedded watch app through the phone
        if not (self.app and self.app.watch_apps and self._watch_needs_pairing()):
            return
        if self._uses_simctl_boot():
            return
        watch = self.watch_handle
        watch.installing = True
        try:
            for watch_app in self.app.watch_apps:
                self._debug(f"Installing watch app {watch_app.path}")
                await self.gateway.install(watch.udid, watch_app.path)
        finally:
            watch.installing = False
        watch.installed = True

    async def _wait_for_watch_sync(self) -> None:
        if not (self.app and self.app.watch_app and self._watch_needs_pairing() and self._uses_simctl_boot()):
            return
        watch_app = self.app.watch_app
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.options.watch_sync_timeout
        self._debug(f"Waiting for {watch_app.app_id} to sync to {self.watch_handle.udid}")
        while not self._terminated:
            try:
                await self.gateway.get_app_container(self.watch_handle.udid, watch_app.app_id)
                self.watch_handle.installed = True
                return
            except SimctlError:
                pass
            if loop.time() >= deadline:
                self._debug(f"Watch app {watch_app.app_id} did not sync within "
                            f"{self.options.watch_sync_timeout:g}s, continuing")
                return
            await asyncio.sleep(self.options.watch_sync_interval)

    # =========================================================================
    # Phase: launch
    # =========================================================================

    async def _launch_watch_app(self) -> None:
        opts = self.options
        if not (opts.launch_watch_app or opts.launch_watch_app_only):
            return
        if not self._watch_needs_pairing():
            self._debug("No pairable Watch Simulator, not launching the watch app")
            return
        watch_app = self.app.watch_app
        self._debug(f"Launching watch app {watch_app.app_id}")
        await self.gateway.launch(self.watch_handle.udid, watch_app.app_id)
        if opts.launch_watch_app_only:
            self._app_started()

    async def _launch_app(self) -> None:
        if not self.app or self.options.launch_watch_app_only:
            return
        self._debug(f"Launching {self.app.app_id}")
        await self.gateway.launch(self.sim_handle.udid, self.app.app_id)
        self._app_started()

    def _app_started(self) -> None:
        if self.app_started:
            return
        self.app_started = True
        self._emit(SessionEventType.APP_STARTED, sim_handle=self.sim_handle,
                   watch_sim_handle=self.watch_handle)

    # =========================================================================
    # Log monitoring
    # =========================================================================

    def _start_system_log_tail(self) -> None:
        if not self.sim_handle.system_log:
            return
        tail = LogTail(self.sim_handle.system_log, self._on_system_line,
                       interval=self.options.log_tail_interval)
        tail.start()
        self._tails.append(tail)

    def _on_system_line(self, line: str) -> None:
        if self._terminated:
            return
        self._emit(SessionEventType.LOG_RAW, message=line)
        if not self.app_started or self.classifier is None:
            return
        result = self.classifier.classify_system_line(line)
        if result.kind == LogKind.CRASH:
            self._on_crash_signal(line)
        elif result.kind == LogKind.AUTO_EXIT:
            self._on_auto_exit()
        elif result.kind == LogKind.APP_LOG and not self._relay_connected:
            self._emit_app_log(result)

    def _on_relay_line(self, line: str) -> None:
        if self._terminated or self.classifier is None:
            return
        result = self.classifier.classify_app_message(line)
        self._emit_app_log(result)
        if result.kind == LogKind.CRASH:
            self._on_crash_signal(line)
        elif result.kind == LogKind.AUTO_EXIT:
            self._on_auto_exit()

    def _on_log_file_line(self, line: str) -> None:
        if self._terminated:
            return
        self._emit(SessionEventType.LOG_FILE, message=line)
        if self.classifier is not None and self.classifier.classify_app_message(line).kind == LogKind.AUTO_EXIT:
            self._on_auto_exit()

    def _emit_app_log(self, result: LogClassification) -> None:
        event_type = SessionEventType.LOG_ERROR if result.is_error else SessionEventType.LOG
        self._emit(event_type, message=result.message)

    def _on_auto_exit(self) -> None:
        self._debug("Detected auto-exit token, stopping the simulator")
        self._spawn(self._finish(SessionEventType.APP_QUIT, stop_simulator=True))

    def _on_crash_signal(self, line: str) -> None:
        if self._crash_task is not None:
            return
        self._debug(f"Detected crash: {line}")
        self._crash_task = self._spawn(self._handle_crash())

    async def _handle_crash(self) -> None:
        # Give ReportCrash time to write the report
        await asyncio.sleep(self.options.crash_settle_delay)
        crash_files = await self._new_crash_files()
        for crash_file in crash_files:
            self._debug(f"Detected crash file: {crash_file}")
        await self._finish(SessionEventType.APP_QUIT, stop_simulator=self.options.auto_exit,
                           crash=SimulatorCrash(crash_files), state=SessionState.CRASHED)

    async def _watch_process(self, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if self._terminated:
            return
        self._debug(f"Simulator exited with code: {code}")
        if not self.app_started:
            return
        await asyncio.sleep(self.options.crash_settle_delay)
        if self._terminated:
            return
        crash_files = await self._new_crash_files()
        if crash_files:
            await self._finish(SessionEventType.APP_QUIT, stop_simulator=False,
                               crash=SimulatorCrash(crash_files), state=SessionState.CRASHED)
        else:
            await self._finish(SessionEventType.EXIT, stop_simulator=False, code=code)

    async def _connect_log_relay(self) -> None:
        if self.options.log_server_port and self.classifier is not None:
            self._spawn(self._relay_loop(int(self.options.log_server_port)))

    async def _relay_loop(self, port: int) -> None:
        """Connect to the app's log relay, retrying until the session ends."""
        while not self._terminated:
            try:
                reader, writer = await asyncio.open_connection(RELAY_HOST, port)
            except ConnectionRefusedError:
                await asyncio.sleep(self.options.relay_retry_delay)
                continue
            except OSError as e:
                self._debug(f"Log relay connection error: {e}")
                await asyncio.sleep(self.options.relay_retry_delay)
                continue

            self._debug(f"Connected to log relay on port {port}")
            self._relay_writer = writer
            self._relay_connected = True
            try:
                while True:
                    line = await reader.readline()
                    if not line:
                        break
                    self._on_relay_line(line.decode("utf-8", errors="replace").rstrip("\r\n"))
            finally:
                self._relay_connected = False
                await self._close_relay()
            self._debug("Log relay disconnected")
            return

    async def _close_relay(self) -> None:
        writer, self._relay_writer = self._relay_writer, None
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass

    async def _find_log_file(self) -> None:
        if self.app and self.options.log_filename:
            self._spawn(self._find_log_file_loop())

    async def _find_log_file_loop(self) -> None:
        while not self._terminated:
            found = await asyncio.to_thread(self._log_file_candidates)
            if found:
                self._debug(f"Found application log file: {found[0]}")
                tail = LogTail(found[0], self._on_log_file_line,
                               interval=self.options.log_tail_interval, from_start=True)
                tail.start()
                self._tails.append(tail)
                return
            await asyncio.sleep(self.options.log_file_retry_interval)

    def _log_file_candidates(self) -> List[str]:
        """App log files in every Documents dir of the simulator.

        The data container UUID is assigned at install time, so every
        container is searched.
        """
        data_dir = self.sim_handle.data_dir
        if not data_dir or not self.options.log_filename:
            return []
        patterns = [
            os.path.join(data_dir, "Containers", "Data", "Application", "*", "Documents", self.options.log_filename),
            os.path.join(data_dir, "Applications", "*", "Documents", self.options.log_filename),
        ]
        return [f for pattern in patterns for f in sorted(glob.glob(pattern)) if os.path.isfile(f)]

    def _remove_stale_log_files(self) -> None:
        for stale in self._log_file_candidates():
            try:
                os.remove(stale)
                self._debug(f"Removing old log file: {stale}")
            except OSError as e:
                self._debug(f"Unable to remove old log file {stale}: {e}")

    # =========================================================================
    # Crash reports
    # =========================================================================

    def _list_crash_files(self) -> Set[str]:
        if self.classifier is None or not os.path.isdir(self.crash_dir):
            return set()
        pattern = self.classifier.crash_file_pattern()
        return {
            os.path.join(self.crash_dir, name)
            for name in os.listdir(self.crash_dir)
            if pattern.match(name)
        }

    async def _new_crash_files(self) -> List[str]:
        current = await asyncio.to_thread(self._list_crash_files)
        return sorted(current - self._crash_snapshot)

    # =========================================================================
    # Termination
    # =========================================================================

    def _spawn(self, coro: Awaitable) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"[{self.sim_handle.udid}] Session task failed: {error}")

    async def _finish(self, event_type: SessionEventType, stop_simulator: bool,
                      state: SessionState = SessionState.QUITTING, **fields) -> bool:
        """The single termination routine.

        Tears everything down and emits the terminal event. Only the first
        caller gets through; later triggers are ignored.

        Returns:
            True if this call ended the session
        """
        if self._terminated:
            return False
        self._terminated = True
        self._set_state(state)
        try:
            await self._teardown(stop_simulator)
        except Exception as e:
            logger.error(f"[{self.sim_handle.udid}] Teardown failed: {e}")

        if event_type == SessionEventType.EXIT and fields.get("code") is None and self._processes:
            fields["code"] = self._processes[0].returncode
        self._terminal_event = self._emit(event_type, sim_handle=self.sim_handle, **fields)
        self._set_state(SessionState.IDLE)
        self._done.set()
        return True

    async def _teardown(self, stop_simulator: bool) -> None:
        for tail in self._tails:
            await tail.stop()
        self._tails.clear()
        await self._close_relay()

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if stop_simulator:
            await self._stop_simulators()
