"""simctl gateway.

Runs `simctl` subcommands with a bounded retry policy and parses the JSON
listing into a SimctlListing.

Retry policy:
  - "Failed to load CoreSimulatorService" means the service is reloading;
    wait CORE_SIMULATOR_RELOAD_DELAY and retry
  - any other failure backs off exponentially from INITIAL_BACKOFF
  - device-already-booted and pair-already-active failures are the caller's
    problem and are raised immediately
"""

import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, List, Optional

from exceptions import SimctlError
from models import PairRecord, SimctlListing

from . import process

logger = logging.getLogger(__name__)

# Configuration
DEFAULT_MAX_TRIES = 4
INITIAL_BACKOFF = 0.1  # Doubles after every failed attempt
CORE_SIMULATOR_RELOAD_DELAY = 2.0

# Exit codes simctl uses for caller-actionable failures
EXIT_CODE_ALREADY_BOOTED = 161
EXIT_CODE_PAIR_CONFLICT = 37

_CORE_SIMULATOR_RE = re.compile(r"Failed to load CoreSimulatorService", re.I)
_ALREADY_BOOTED_RE = re.compile(r"current state:? Booted", re.I)
_PAIR_ACTIVE_RE = re.compile(r"This pair is already active", re.I)
_PAIR_STATE_RE = re.compile(r"^\(((?:in)?active),")


def is_already_booted(error: SimctlError) -> bool:
    return (error.returncode == EXIT_CODE_ALREADY_BOOTED
            or bool(_ALREADY_BOOTED_RE.search(error.output)))


def is_pair_already_active(error: SimctlError) -> bool:
    return bool(_PAIR_ACTIVE_RE.search(error.output))


def _is_fatal(error: SimctlError) -> bool:
    if is_already_booted(error):
        return True
    return error.returncode == EXIT_CODE_PAIR_CONFLICT and is_pair_already_active(error)


def parse_listing(output: str) -> SimctlListing:
    """Parse `simctl list --json` output, ignoring any noise before the JSON."""
    start = output.find("{")
    if start == -1:
        raise ValueError("simctl list did not return JSON")
    data = json.loads(output[start:])

    pairs = {}
    by_phone = {}
    for pair_id, info in (data.get("pairs") or {}).items():
        m = _PAIR_STATE_RE.match(info.get("state", ""))
        if not m:
            continue
        record = PairRecord(
            pair_id=pair_id,
            phone_udid=info["phone"]["udid"],
            watch_udid=info["watch"]["udid"],
            active=m.group(1) == "active",
        )
        pairs[pair_id] = record
        by_phone.setdefault(record.phone_udid, {})[record.watch_udid] = record

    return SimctlListing(
        device_types=list(data.get("devicetypes") or []),
        runtimes=list(data.get("runtimes") or []),
        devices=dict(data.get("devices") or {}),
        pairs=pairs,
        ios_sim_to_watch_sim_to_pair=by_phone,
    )


class SimctlGateway:
    """Invokes a specific `simctl` executable."""

    def __init__(self, simctl: str = "simctl",
                 max_tries: int = DEFAULT_MAX_TRIES,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.simctl = simctl
        self.max_tries = max(1, max_tries)
        self._sleep = sleep

    def _command(self, args) -> List[str]:
        # A bare "simctl" is not on PATH; go through xcrun
        if self.simctl == "simctl":
            return ["xcrun", "simctl", *args]
        return [self.simctl, *args]

    async def _exec(self, *args: str) -> str:
        """Run simctl once; raise SimctlError on a non-zero exit."""
        command = self._command(args)
        result = await process.run(*command)
        if result.returncode != 0:
            raise SimctlError(
                f"simctl {args[0]} failed (code {result.returncode}): {result.output}",
                args=command,
                returncode=result.returncode,
                output=result.output,
            )
        return result.stdout

    async def run(self, *args: str, max_tries: Optional[int] = None) -> str:
        """Run simctl with the retry policy, returning stdout."""
        tries = max(1, max_tries if max_tries is not None else self.max_tries)
        backoff = INITIAL_BACKOFF
        last_error: Optional[SimctlError] = None

        for attempt in range(1, tries + 1):
            try:
                return await self._exec(*args)
            except SimctlError as e:
                if _is_fatal(e):
                    raise
                last_error = e
                if attempt == tries:
                    break
                if _CORE_SIMULATOR_RE.search(e.output):
                    delay = CORE_SIMULATOR_RELOAD_DELAY
                    logger.warning(f"CoreSimulatorService is reloading, retrying in {delay:g}s "
                                   f"(attempt {attempt}/{tries})")
                else:
                    delay = backoff
                    backoff *= 2
                    logger.debug(f"simctl {args[0]} failed, retrying in {delay:g}s "
                                 f"(attempt {attempt}/{tries}): {e}")
                await self._sleep(delay)

        raise SimctlError(
            f"Failed to run simctl {' '.join(args)} after {tries} attempt(s): {last_error}",
            args=last_error.command if last_error else list(args),
            returncode=last_error.returncode if last_error else None,
            output=last_error.output if last_error else "",
        ) from last_error

    # =========================================================================
    # Subcommands
    # =========================================================================

    async def list(self, max_tries: Optional[int] = None) -> SimctlListing:
        output = await self.run("list", "--json", max_tries=max_tries)
        return parse_listing(output)

    async def boot(self, udid: str) -> None:
        await self.run("boot", udid)

    async def shutdown(self, udid: str) -> None:
        await self.run("shutdown", udid)

    async def install(self, udid: str, app_path: str) -> None:
        await self.run("install", udid, app_path)

    async def uninstall(self, udid: str, app_id: str) -> None:
        await self.run("uninstall", udid, app_id)

    async def launch(self, udid: str, app_id: str) -> None:
        await self.run("launch", udid, app_id)

    async def pair(self, watch_udid: str, phone_udid: str) -> str:
        """Pair a watch with a phone, returning the new pair id."""
        output = await self.run("pair", watch_udid, phone_udid)
        return output.strip()

    async def unpair(self, pair_id: str) -> None:
        await self.run("unpair", pair_id)

    async def activate_pair(self, pair_id: str) -> None:
        await self.run("pair_activate", pair_id)

    async def create(self, name: str, device_type: str, runtime: str) -> str:
        """Create a simulator, returning its UDID."""
        output = await self.run("create", name, device_type, runtime)
        return output.strip()

    async def get_app_container(self, udid: str, app_id: str) -> str:
        output = await self.run("get_app_container", udid, app_id, max_tries=1)
        return output.strip()
