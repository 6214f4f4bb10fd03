"""Async access to the Firebase Realtime Database.

The Admin SDK is blocking and delivers `listen()` events on its own thread.
`RealtimeStore` runs reads and writes in worker threads and hands listener
events to the event loop through a `Subscription`, so every handler runs as
a coroutine, one event at a time, in the order the database sent them.
"""

import asyncio
from typing import Any, Awaitable, Callable

from firebase_admin import db, exceptions
from firebase_functions import logger

from errors import StoreWriteError, TransientReadError

# Resolved by the database server to its own clock on write
SERVER_TIMESTAMP = {".sv": "timestamp"}

_CLOSE = object()
_UNSET = object()


class Subscription:
    """Cancellable handle for one long-lived listener.

    Events are queued by `deliver()` and processed sequentially by a consumer
    task. A failing handler is logged and the subscription keeps running.
    """

    def __init__(self, path: str, kind: str, callback: Callable[..., Awaitable[None]]):
        self.path = path
        self.kind = kind
        self.closed = False
        self._callback = callback
        self._queue: asyncio.Queue = asyncio.Queue()
        self._registration = None
        self._release = None
        self._running = False
        self._task = asyncio.get_running_loop().create_task(self._run())

    def __repr__(self):
        return f"<Subscription {self.kind} {self.path}{' closed' if self.closed else ''}>"

    @property
    def busy(self) -> bool:
        return self._running or not self._queue.empty()

    def attach(self, registration) -> None:
        """Binds the SDK listener registration released on close."""
        self._registration = registration
        if self.closed:
            self._release_registration()

    def deliver(self, *event) -> None:
        if not self.closed:
            self._queue.put_nowait(event)

    def cancel(self) -> None:
        """Stops accepting events and drops queued ones; the in-flight handler finishes.

        Safe to call from inside this subscription's own handler.
        """
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(_CLOSE)
        self._release_registration()

    async def close(self, timeout: float | None = None) -> None:
        self.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout)
        except asyncio.TimeoutError:
            logger.warn(f"Subscription {self.kind} at /{self.path} did not finish in {timeout}s, cancelling")
            self._task.cancel()
        if self._release is not None:
            await self._release

    async def join(self) -> None:
        """Waits until every queued event has been handled."""
        await self._queue.join()

    def _release_registration(self):
        if self._registration is not None and self._release is None:
            self._release = asyncio.ensure_future(asyncio.to_thread(self._registration.close))

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                if event is _CLOSE:
                    return
                if self.closed:
                    continue
                self._running = True
                await self._callback(*event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Handler for {self.kind} at /{self.path} failed: {e!r}")
            finally:
                self._running = False
                self._queue.task_done()


class ChildTracker:
    """Derives child-added events from the SDK's put/patch event stream.

    The first `put` at the root lists every existing child, so all of them
    are reported as added, as a child_added listener would. A `None` value in
    a result means the event only carried part of the child and it has to
    be read separately.
    """

    def __init__(self):
        self.seen: set[str] = set()

    def apply(self, event_type: str, path: str, data: Any) -> list[tuple[str, Any]]:
        added: list[tuple[str, Any]] = []
        parts = [p for p in path.split("/") if p]
        if not parts:
            if event_type == "put":
                current = data if isinstance(data, dict) else {}
                self.seen &= set(current)
                added = [(key, value) for key, value in current.items() if key not in self.seen]
            elif isinstance(data, dict):
                for key, value in data.items():
                    if value is None:
                        self.seen.discard(key)
                    elif key not in self.seen:
                        added.append((key, value))
        else:
            key = parts[0]
            if len(parts) == 1 and event_type == "put" and data is None:
                self.seen.discard(key)
            elif key not in self.seen:
                whole = len(parts) == 1 and event_type == "put"
                added.append((key, data if whole else None))
        self.seen.update(key for key, _ in added)
        return added


async def run_transaction(
    attempt: Callable[[], Any],
    *,
    path: str,
    max_attempts: int = 5,
    base_delay: float = 0.2,
    retry_on: tuple[type[BaseException], ...] = (db.TransactionAbortedError, exceptions.FirebaseError),
) -> bool:
    """Runs a blocking read-modify-write with exponential backoff.

    Returns True once an attempt commits, False after `max_attempts` failed.
    """
    for number in range(1, max_attempts + 1):
        try:
            await asyncio.to_thread(attempt)
            return True
        except retry_on as e:
            if number == max_attempts:
                logger.error(f"Transaction at /{path} gave up after {number} attempts: {e}")
                break
            delay = base_delay * 2 ** (number - 1)
            logger.warn(f"Transaction at /{path} failed (attempt {number}), retrying in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)
    return False


class RealtimeStore:
    """Realtime Database collaborator shared by all watchers."""

    SERVER_TIMESTAMP = SERVER_TIMESTAMP

    def __init__(self, app=None, *, max_attempts: int = 5, base_delay: float = 0.2):
        self._app = app
        self.max_attempts = max_attempts
        self.base_delay = base_delay

    def reference(self, path: str) -> db.Reference:
        return db.reference(f"/{path.strip('/')}", app=self._app)

    async def get(self, path: str) -> Any:
        try:
            return await asyncio.to_thread(self.reference(path).get)
        except exceptions.FirebaseError as e:
            raise TransientReadError(path, str(e)) from e

    async def set(self, path: str, value: Any) -> None:
        ref = self.reference(path)
        try:
            if value is None:
                await asyncio.to_thread(ref.delete)
            else:
                await asyncio.to_thread(ref.set, value)
        except exceptions.FirebaseError as e:
            raise StoreWriteError(path, str(e)) from e

    async def update(self, values: dict[str, Any]) -> None:
        """Multi-location write from the root; not atomic across retries."""
        try:
            await asyncio.to_thread(self.reference("/").update, values)
        except exceptions.FirebaseError as e:
            raise StoreWriteError(", ".join(values), str(e)) from e

    async def transaction(self, path: str, update: Callable[[Any], Any]) -> bool:
        ref = self.reference(path)
        return await run_transaction(
            lambda: ref.transaction(update),
            path=path.strip("/"),
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
        )

    async def top_children(self, path: str, order_by: str, limit: int) -> list[tuple[str, Any]]:
        """Last `limit` children by `order_by`, ascending as the index returns them.

        Requires an `.indexOn` rule for `order_by` at `path`.
        """
        query = self.reference(path).order_by_child(order_by).limit_to_last(limit)
        try:
            result = await asyncio.to_thread(query.get)
        except exceptions.FirebaseError as e:
            raise TransientReadError(path, str(e)) from e
        return children_items(result)

    async def on_child_added(self, path: str, callback: Callable[[str, Any], Awaitable[None]]) -> Subscription:
        """Calls `callback(key, value)` for every existing and future child."""
        path = path.strip("/")

        async def handle(key, value):
            if value is None:
                try:
                    value = await self.get(f"{path}/{key}")
                except TransientReadError as e:
                    logger.warn(str(e))
                    return
                if value is None:
                    return
            await callback(key, value)

        subscription = Subscription(path, "child_added", handle)
        tracker = ChildTracker()
        loop = asyncio.get_running_loop()

        def listener(event):
            for key, value in tracker.apply(event.event_type, event.path, event.data):
                loop.call_soon_threadsafe(subscription.deliver, key, value)

        await self._listen(subscription, listener)
        return subscription

    async def on_value(self, path: str, callback: Callable[[Any], Awaitable[None]]) -> Subscription:
        """Calls `callback(value)` with the initial value and after every change."""
        path = path.strip("/")
        last = _UNSET

        async def handle():
            nonlocal last
            try:
                value = await self.get(path)
            except TransientReadError as e:
                logger.warn(str(e))
                return
            if value == last:
                return
            last = value
            await callback(value)

        subscription = Subscription(path, "value", handle)
        loop = asyncio.get_running_loop()

        def listener(event):
            loop.call_soon_threadsafe(subscription.deliver)

        await self._listen(subscription, listener)
        return subscription

    async def _listen(self, subscription: Subscription, listener) -> None:
        try:
            registration = await asyncio.to_thread(self.reference(subscription.path).listen, listener)
        except exceptions.FirebaseError as e:
            await subscription.close()
            raise TransientReadError(subscription.path, str(e)) from e
        subscription.attach(registration)


def child_path(*parts: str) -> str:
    """Joins database path segments: child_path("posts", "p1", "stars") -> "posts/p1/stars"."""
    return "/".join(str(p).strip("/") for p in parts if p)


def children_items(node: Any) -> list[tuple[str, Any]]:
    """(key, value) pairs of a node; the SDK returns array-like nodes as lists."""
    if isinstance(node, dict):
        return list(node.items())
    if isinstance(node, list):
        return [(str(i), value) for i, value in enumerate(node) if value is not None]
    return []
