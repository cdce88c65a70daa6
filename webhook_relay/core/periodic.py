import asyncio
from typing import Awaitable, Callable, Optional

from webhook_relay.core.logging import get_logger


class PeriodicTask:
    """
    Cancellable repeating task on the running event loop.

    Sleeps ``interval`` seconds, runs ``callback``, repeats. Exceptions raised
    by the callback are logged and the loop carries on with the next tick;
    only cancellation ends it.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Awaitable[None]],
    ):
        self.name = name
        self.interval = interval
        self.callback = callback
        self.logger = get_logger(self.__class__.__name__)
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        self._task = None

    async def run_once(self) -> None:
        """Run the callback immediately, with the same error handling as a tick."""
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.error(
                "Periodic task failed",
                task=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _run(self) -> None:
        self.logger.debug("Periodic task started", task=self.name, interval=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()
