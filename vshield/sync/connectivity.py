"""Connectivity monitor.

Reports whether the remote backend is believed reachable and notifies
subscribers on every change. Reachability comes either from the platform
(`set_connected`) or from polling a probe such as `HttpRemoteBackend.ping`
(`watch`).
"""

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

logger = logging.getLogger(__name__)

ConnectivityCallback = Callable[[bool], Union[None, Awaitable[None]]]


class ConnectivityMonitor:
    def __init__(self, connected: bool = False):
        self._connected = connected
        self._callbacks: list[ConnectivityCallback] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_connected(self) -> bool:
        return self._connected

    def on_change(self, callback: ConnectivityCallback) -> Callable[[], None]:
        """Subscribe to changes. Returns a function that unsubscribes."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def set_connected(self, connected: bool) -> None:
        """Record the current reachability; subscribers hear only about changes.

        Coroutine callbacks are scheduled on the running loop.
        """
        if connected == self._connected:
            return
        self._connected = connected
        logger.info("Connectivity %s", "restored" if connected else "lost")
        for callback in list(self._callbacks):
            try:
                result = callback(connected)
            except Exception:
                logger.exception("Connectivity callback %r failed", callback)
                continue
            if inspect.isawaitable(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    logger.warning("Connectivity callback %r needs a running event loop; skipped", callback)
                    if inspect.iscoroutine(result):
                        result.close()
                    continue
                task = asyncio.ensure_future(result, loop=loop)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Connectivity callback failed: %s", task.exception())

    async def check(self, probe: Callable[[], Awaitable[bool]]) -> bool:
        """Run the probe once and record the result."""
        try:
            reachable = bool(await probe())
        except Exception as e:
            logger.debug("Connectivity probe raised: %s", e)
            reachable = False
        self.set_connected(reachable)
        return reachable

    async def watch(self, probe: Callable[[], Awaitable[bool]], interval: float = 15.0) -> None:
        """Poll `probe` every `interval` seconds until cancelled."""
        while True:
            await self.check(probe)
            await asyncio.sleep(interval)
