"""
Background scheduling for the TensorTours client.

Provides a cancellable one-shot timer backed by an asyncio task. The session
manager uses it to refresh tokens shortly before they expire.
"""

import asyncio
import inspect
import logging
from typing import Optional, Callable, Any, Set

logger = logging.getLogger(__name__)


class CancellableTimer:
    """
    One-shot timer that runs a callback after a delay.

    Arming the timer again replaces the previous arming. A cancelled timer
    never invokes its callback; once the callback has started it is allowed
    to finish and ``cancel()`` no longer affects it.
    """

    def __init__(self, name: str = "timer"):
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._firing: Set[asyncio.Task] = set()

    @property
    def is_pending(self) -> bool:
        """Whether the timer is armed and has not fired yet."""
        return self._task is not None and not self._task.done()

    def schedule(self, delay_seconds: float, callback: Callable[[], Any]) -> None:
        """
        Arm the timer.

        Args:
            delay_seconds: Seconds to wait; negative values fire immediately
            callback: Plain function or coroutine function taking no arguments
        """
        self.cancel()
        delay = max(0.0, delay_seconds)
        self._task = asyncio.get_running_loop().create_task(self._run(delay, callback))
        logger.debug(f"Timer '{self.name}' armed for {delay:.1f}s")

    def cancel(self) -> None:
        """Disarm the timer if it has not fired."""
        task, self._task = self._task, None
        if task is not None and not task.done() and task not in self._firing:
            task.cancel()
            logger.debug(f"Timer '{self.name}' cancelled")

    async def wait_closed(self) -> None:
        """Wait for the armed task and any running callbacks to finish."""
        tasks = list(self._firing)
        if self._task is not None:
            tasks.append(self._task)
        tasks = [task for task in tasks if task is not asyncio.current_task()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, delay: float, callback: Callable[[], Any]) -> None:
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return

        task = asyncio.current_task()
        if self._task is task:
            self._task = None
        self._firing.add(task)
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            logger.debug(f"Timer '{self.name}' callback cancelled")
        except Exception as e:
            logger.error(f"Error in timer '{self.name}' callback: {e}")
        finally:
            self._firing.discard(task)
