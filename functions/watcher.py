import asyncio

from firebase_functions import logger

from store import Subscription


class Watcher:
    """Base for components that own long-lived store subscriptions."""

    name = "watcher"

    def __init__(self, store):
        self._store = store
        self._subscriptions: list[Subscription] = []
        self._tasks: list[asyncio.Task] = []

    @property
    def subscriptions(self) -> list[Subscription]:
        return [s for s in self._subscriptions if not s.closed]

    def _track(self, subscription: Subscription) -> Subscription:
        self._subscriptions = [s for s in self._subscriptions if not s.closed]
        self._subscriptions.append(subscription)
        return subscription

    async def start(self) -> None:
        raise NotImplementedError

    async def stop(self, timeout: float | None = None) -> None:
        """Cancels every subscription and background task of this watcher."""
        for task in self._tasks:
            task.cancel()
        subscriptions, self._subscriptions = self._subscriptions, []
        await asyncio.gather(*(s.close(timeout) for s in subscriptions))
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(f"{self.name} stopped")
