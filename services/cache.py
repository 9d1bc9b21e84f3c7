"""Detection cache shared by the toolchain and simulator detectors.

Values are only ever replaced wholesale: a refresh computes the new value
completely before swapping it in, so readers see either the old value or
the new one. Concurrent callers asking for the same key while a detection
is running share that detection instead of starting another one.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class DetectionCache:
    """Keyed async cache with explicit invalidation."""

    def __init__(self):
        self._values: Dict[str, Any] = {}
        self._pending: Dict[str, asyncio.Future] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def peek(self, key: str) -> Optional[Any]:
        """Return the cached value without triggering detection."""
        return self._values.get(key)

    async def get(self, key: str, factory: Callable[[], Awaitable[Any]],
                  force: bool = False) -> Any:
        """Return the cached value for key, running factory on a miss.

        Args:
            key: Cache key
            factory: Coroutine function producing a fresh value
            force: Bypass the cached value and re-run detection
        """
        if not force and key in self._values:
            return self._values[key]

        pending = self._pending.get(key)
        if pending is not None:
            logger.debug(f"Waiting for in-flight detection of {key}")
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            value = await factory()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a future nobody else awaited does not warn
            future.exception()
            raise
        else:
            self._values[key] = value
            future.set_result(value)
            return value
        finally:
            self._pending.pop(key, None)

    async def force_refresh(self, key: str, factory: Callable[[], Awaitable[Any]]) -> Any:
        return await self.get(key, factory, force=True)

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one key, or everything when key is None."""
        if key is None:
            self._values.clear()
            logger.debug("Detection cache cleared")
        else:
            self._values.pop(key, None)
            logger.debug(f"Detection cache invalidated: {key}")

    def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._values if k.startswith(prefix)]:
            del self._values[key]
        logger.debug(f"Detection cache invalidated: {prefix}*")


# Global singleton instance
detection_cache = DetectionCache()
