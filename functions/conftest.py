"""
Shared pytest fixtures for the relay tests.

`FakeStore` keeps the database as a nested dict and pushes child_added and
value events through real `Subscription` handles whenever a write changes
what a listener can see, like the Realtime Database does.
"""

import asyncio
import copy
from typing import Any

import pytest

from errors import SigningUnavailable, StoreWriteError, TransientReadError
from store import SERVER_TIMESTAMP, Subscription

_MISSING = object()


def _parts(path: str) -> list[str]:
    return [p for p in path.split("/") if p]


def _prune(value):
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        pruned = {k: v for k, v in pruned.items() if v is not None and v != {}}
        return pruned or None
    return value


class FakeStore:
    SERVER_TIMESTAMP = SERVER_TIMESTAMP

    def __init__(self, data: dict | None = None, now: int = 1_700_000_000_000):
        self.data: dict = copy.deepcopy(data or {})
        self.now = now
        self.writes: list[tuple[str, Any]] = []
        self.transactions: list[str] = []
        self.failing_reads: set[str] = set()
        self.failing_writes: set[str] = set()
        self.failing_transactions: set[str] = set()
        self._listeners: list[dict] = []

    # ---------------------------------------------------------------- reads

    def value_at(self, path: str) -> Any:
        node: Any = self.data
        for part in _parts(path):
            if not isinstance(node, dict) or part not in node:
                return None
            node = node[part]
        return copy.deepcopy(node)

    async def get(self, path: str) -> Any:
        if path.strip("/") in self.failing_reads:
            raise TransientReadError(path, "simulated outage")
        return self.value_at(path)

    async def top_children(self, path: str, order_by: str, limit: int):
        if path.strip("/") in self.failing_reads:
            raise TransientReadError(path, "simulated outage")
        children = self.value_at(path) or {}

        def key(item):
            value = item[1].get(order_by) if isinstance(item[1], dict) else None
            return (value is not None, value if value is not None else 0, item[0])

        return sorted(children.items(), key=key)[-limit:]

    # --------------------------------------------------------------- writes

    def _resolve(self, value):
        if value == SERVER_TIMESTAMP:
            return self.now
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        return value

    def _put(self, path: str, value: Any) -> None:
        parts = _parts(path)
        value = self._resolve(copy.deepcopy(value))
        if not parts:
            self.data = value if isinstance(value, dict) else {}
            return
        node = self.data
        trail = []
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            trail.append((node, part))
            node = child
        value = _prune(value)
        if value is None:
            node.pop(parts[-1], None)
        else:
            node[parts[-1]] = value
        # the database keeps no empty parents
        for parent, part in reversed(trail):
            if parent[part]:
                break
            del parent[part]

    def _check_writable(self, path: str):
        if path.strip("/") in self.failing_writes:
            raise StoreWriteError(path, "simulated outage")

    async def set(self, path: str, value: Any) -> None:
        self._check_writable(path)
        self.writes.append((path.strip("/"), value))
        self._put(path, value)
        self._notify()

    async def update(self, values: dict[str, Any]) -> None:
        for path in values:
            self._check_writable(path)
        for path, value in values.items():
            self.writes.append((path.strip("/"), value))
            self._put(path, value)
        self._notify()

    async def transaction(self, path: str, update) -> bool:
        path = path.strip("/")
        self.transactions.append(path)
        if path in self.failing_transactions:
            return False
        new_value = update(self.value_at(path))
        self._put(path, new_value)
        self._notify()
        return True

    # ------------------------------------------------------------ listeners

    async def on_child_added(self, path: str, callback) -> Subscription:
        path = path.strip("/")
        if path in self.failing_reads:
            raise TransientReadError(path, "simulated outage")
        listener = {"kind": "child_added", "path": path, "seen": set(),
                    "sub": Subscription(path, "child_added", callback)}
        self._listeners.append(listener)
        self._fire(listener)
        return listener["sub"]

    async def on_value(self, path: str, callback) -> Subscription:
        path = path.strip("/")
        if path in self.failing_reads:
            raise TransientReadError(path, "simulated outage")
        listener = {"kind": "value", "path": path, "last": _MISSING,
                    "sub": Subscription(path, "value", callback)}
        self._listeners.append(listener)
        self._fire(listener)
        return listener["sub"]

    def emit_child_added(self, path: str, key: str) -> None:
        """Replays a child_added event, as a reconnect would."""
        path = path.strip("/")
        for listener in self._listeners:
            if listener["kind"] == "child_added" and listener["path"] == path:
                listener["sub"].deliver(key, self.value_at(f"{path}/{key}"))

    def listeners(self, path: str) -> list[Subscription]:
        path = path.strip("/")
        return [l["sub"] for l in self._listeners if l["path"] == path and not l["sub"].closed]

    def _fire(self, listener: dict) -> None:
        sub = listener["sub"]
        if sub.closed:
            return
        current = self.value_at(listener["path"])
        if listener["kind"] == "value":
            if current != listener["last"]:
                listener["last"] = copy.deepcopy(current)
                sub.deliver(current)
            return
        children = current if isinstance(current, dict) else {}
        listener["seen"] &= set(children)
        for key, value in children.items():
            if key not in listener["seen"]:
                listener["seen"].add(key)
                sub.deliver(key, copy.deepcopy(value))

    def _notify(self) -> None:
        for listener in list(self._listeners):
            self._fire(listener)

    async def settle(self, rounds: int = 100) -> None:
        """Waits until no listener has queued or running events."""
        for _ in range(rounds):
            busy = [l["sub"] for l in self._listeners if l["sub"].busy]
            if not busy:
                await asyncio.sleep(0)
                if not any(l["sub"].busy for l in self._listeners):
                    return
                continue
            for sub in busy:
                await sub.join()
        raise AssertionError("store did not settle")

    async def close(self) -> None:
        await asyncio.gather(*(l["sub"].close(1) for l in self._listeners))


class FakeMailer:
    def __init__(self, failing: set[str] | None = None):
        self.sent: list[dict] = []
        self.failing = set(failing or ())

    async def send(self, to, subject, *, html=None, text=None) -> bool:
        if to in self.failing:
            return False
        self.sent.append({"to": to, "subject": subject, "html": html, "text": text})
        return True

    def to(self, address: str) -> list[dict]:
        return [m for m in self.sent if m["to"] == address]


class FakeSms:
    def __init__(self, succeed: bool = True, enabled: bool = False):
        self.succeed = succeed
        self.enabled = enabled
        self.sent: list[tuple[str, str]] = []

    async def send(self, phone, content) -> bool:
        self.sent.append((phone, content))
        return self.succeed


class FakeTokens:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.minted: list[tuple[str, dict]] = []

    async def mint(self, subject_id, claims=None) -> str:
        if self.fail:
            raise SigningUnavailable("no signing key")
        self.minted.append((subject_id, claims))
        return f"token-for-{subject_id}"


@pytest.fixture
def mailer() -> FakeMailer:
    return FakeMailer()


@pytest.fixture
def sms() -> FakeSms:
    return FakeSms()


@pytest.fixture
def tokens() -> FakeTokens:
    return FakeTokens()
