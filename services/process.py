"""Async helpers for running external tools and inspecting processes."""

import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """Exit status and decoded output of a finished command."""
    args: List[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return (self.stderr or self.stdout).strip()


def get_environment() -> dict:
    """Get environment with proper PATH for external tools."""
    env = os.environ.copy()
    home = os.path.expanduser("~")
    additional_paths = [
        "/opt/homebrew/bin",
        "/usr/local/bin",
        f"{home}/.local/bin",
        "/usr/bin",
        "/bin",
        "/usr/sbin",
    ]
    env["PATH"] = ":".join(additional_paths) + ":" + env.get("PATH", "")
    return env


async def run(*args: str, timeout: Optional[float] = None) -> ProcessResult:
    """Run a command to completion without blocking the event loop."""
    logger.debug(f"Running: {' '.join(args)}")
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=get_environment(),
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return ProcessResult(
        args=list(args),
        returncode=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


async def spawn_detached(*args: str) -> asyncio.subprocess.Process:
    """Start a long-running background process (e.g. the Simulator app)."""
    logger.debug(f"Spawning: {' '.join(args)}")
    return await asyncio.create_subprocess_exec(
        *args,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
        start_new_session=True,
        env=get_environment(),
    )


async def find_pids(needle: str) -> List[int]:
    """Find pids whose command line contains ``needle`` using `ps -ef`."""
    result = await run("ps", "-ef")
    if result.returncode != 0:
        raise RuntimeError(f"Failed to get process list (exit code {result.returncode})")

    pids = []
    for line in result.stdout.splitlines()[1:]:
        if needle not in line:
            continue
        columns = line.split(None, 7)
        if len(columns) < 2:
            continue
        try:
            pid = int(columns[1])
        except ValueError:
            continue
        if pid != os.getpid():
            pids.append(pid)
    return pids


def kill(pid: int, sig: int = signal.SIGKILL) -> bool:
    """Send a signal, returning False if the process is already gone."""
    try:
        os.kill(pid, sig)
        return True
    except ProcessLookupError:
        return False
