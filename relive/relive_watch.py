"""
A polling file watcher driven by an asyncio task.
"""

import asyncio
import inspect
import logging
import os
from typing import Any, Callable, Dict, Optional

LOGGER = logging.getLogger(__name__)


def _mtime(path: str) -> Optional[int]:
    try:
        return os.stat(path).st_mtime_ns
    except FileNotFoundError:
        return None


class PollingWatcher:
    """Calls `on_change(path)` whenever a watched file's mtime changes.

    The callback may be a plain function or a coroutine function; coroutines
    are awaited inside the polling task, so one slow update delays the next
    poll rather than overlapping with it.
    """

    def __init__(self, interval: float = 0.1):
        self.interval = interval
        self._watched: Dict[str, Callable[[str], Any]] = {}
        self._mtimes: Dict[str, Optional[int]] = {}
        self._task: Optional[asyncio.Task] = None

    def watch(self, path: str, on_change: Callable[[str], Any]):
        self._watched[path] = on_change
        self._mtimes[path] = _mtime(path)
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._poll())

    def unwatch(self, path: str):
        self._watched.pop(path, None)
        self._mtimes.pop(path, None)

    def is_watching(self, path: str) -> bool:
        return path in self._watched

    async def check(self):
        """One polling pass."""
        for path, on_change in list(self._watched.items()):
            current = _mtime(path)
            if current is None or current == self._mtimes.get(path):
                continue
            self._mtimes[path] = current
            LOGGER.debug("change detected path=%s mtime=%s", path, current)
            try:
                result = on_change(path)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                LOGGER.exception("watch callback failed for %s", path)

    async def _poll(self):
        while self._watched:
            await asyncio.sleep(self.interval)
            await self.check()

    async def close(self):
        self._watched.clear()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
