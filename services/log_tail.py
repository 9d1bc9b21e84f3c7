"""Poll-based file tailing on the event loop."""

import asyncio
import logging
import os
from typing import Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 0.5


class LogTail:
    """Follows a text file, calling on_line for each complete new line.

    The file does not have to exist yet. A file that shrinks (truncated or
    replaced) is re-read from the start.

    Args:
        path: File to follow
        on_line: Called with each line, without the trailing newline
        interval: Seconds between polls
        from_start: Emit lines already in the file instead of only new ones
    """

    def __init__(self, path: str, on_line: Callable[[str], None],
                 interval: float = DEFAULT_INTERVAL, from_start: bool = False):
        self.path = path
        self._on_line = on_line
        self._interval = interval
        self._from_start = from_start
        self._position: Optional[int] = None
        self._buffer = b""
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        if not self._from_start and os.path.isfile(self.path):
            self._position = os.path.getsize(self.path)
        else:
            self._position = 0
        self._task = asyncio.create_task(self._run())
        logger.debug(f"Tailing {self.path}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Stopped tailing {self.path}")

    async def _run(self) -> None:
        while True:
            try:
                self.poll()
            except OSError as e:
                logger.debug(f"Unable to read {self.path}: {e}")
            await asyncio.sleep(self._interval)

    def poll(self) -> None:
        """Read whatever was appended since the last poll."""
        if not os.path.isfile(self.path):
            return
        size = os.path.getsize(self.path)
        if self._position is None or size < self._position:
            self._position = 0
            self._buffer = b""
        if size == self._position:
            return

        with open(self.path, "rb") as f:
            f.seek(self._position)
            chunk = f.read()
            self._position = f.tell()

        data = self._buffer + chunk
        lines = data.split(b"\n")
        self._buffer = lines.pop()
        for line in lines:
            self._on_line(line.decode("utf-8", errors="replace").rstrip("\r"))
