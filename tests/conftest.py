"""Shared fixtures: an in-memory ZooKeeper stand-in with kazoo's client surface.

FakeEnsemble holds the node tree; each FakeZooKeeper is one client handle with
its own session, watches and connection listeners. Tests drive the session
with suspend/resume/expire_session/reconnect/kill_session.
"""
from __future__ import annotations

import threading
import time

import pytest
from kazoo.exceptions import ConnectionLoss, NodeExistsError, NoNodeError, NotEmptyError
from kazoo.protocol.states import EventType, KazooState, KeeperState, WatchedEvent, ZnodeStat

from soa_discovery.services.session import SessionMonitor


def _parent(path: str) -> str:
    head = path.rsplit("/", 1)[0]
    return head or "/"


class _Node:
    def __init__(self, data: bytes, owner: int):
        self.data = data
        self.owner = owner
        self.version = 0


class FakeEnsemble:
    def __init__(self):
        self.lock = threading.RLock()
        self.nodes = {"/": _Node(b"", 0)}
        self.child_watches: dict[str, set] = {}
        self.data_watches: dict[str, set] = {}
        self._sessions = 1000

    def new_session_id(self) -> int:
        with self.lock:
            self._sessions += 1
            return self._sessions

    def client(self, connected: bool = True) -> "FakeZooKeeper":
        return FakeZooKeeper(self, connected)

    def children(self, path: str) -> list:
        prefix = path.rstrip("/") + "/"
        return sorted(
            p[len(prefix):] for p in self.nodes
            if p != "/" and p.startswith(prefix) and "/" not in p[len(prefix):]
        )

    def stat(self, path: str) -> ZnodeStat:
        node = self.nodes[path]
        return ZnodeStat(0, 0, 0, 0, node.version, 0, 0, node.owner, len(node.data),
                         len(self.children(path)), 0)

    # Callers hold self.lock; returned events are fired after releasing it.
    def pop_watches(self, table: dict, path: str, event_type) -> list:
        watchers = table.pop(path, set())
        return [(client, fn, WatchedEvent(event_type, KeeperState.CONNECTED, path))
                for client, fn in watchers]

    def add_node(self, path: str, data: bytes, owner: int) -> list:
        self.nodes[path] = _Node(data, owner)
        return (self.pop_watches(self.data_watches, path, EventType.CREATED)
                + self.pop_watches(self.child_watches, _parent(path), EventType.CHILD))

    def remove_node(self, path: str) -> list:
        del self.nodes[path]
        return (self.pop_watches(self.data_watches, path, EventType.DELETED)
                + self.pop_watches(self.child_watches, path, EventType.DELETED)
                + self.pop_watches(self.child_watches, _parent(path), EventType.CHILD))

    def expire(self, client: "FakeZooKeeper") -> list:
        """Server side of a session expiry: drop its ephemerals and watches."""
        with self.lock:
            for table in (self.child_watches, self.data_watches):
                for watchers in table.values():
                    for entry in [w for w in watchers if w[0] is client]:
                        watchers.discard(entry)
            fired = []
            owned = sorted((p for p, n in self.nodes.items() if n.owner == client.session_id), reverse=True)
            for path in owned:
                fired += self.remove_node(path)
            return fired

    @staticmethod
    def fire(events: list) -> None:
        for client, fn, event in events:
            if client.connected:
                fn(event)


class FakeZooKeeper:
    """Implements the subset of ``kazoo.client.KazooClient`` the package uses."""

    def __init__(self, ensemble: FakeEnsemble, connected: bool = True):
        self.ensemble = ensemble
        self.session_id = ensemble.new_session_id()
        self._connected = connected
        self._listeners: list = []

    # -- KazooClient surface --------------------------------------------------

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def client_id(self):
        return (self.session_id, b"secret")

    def add_listener(self, listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _check(self) -> None:
        if not self._connected:
            raise ConnectionLoss()

    def _watch(self, table: dict, path: str, watch) -> None:
        if watch is not None:
            table.setdefault(path, set()).add((self, watch))

    def create(self, path, value=b"", ephemeral=False, makepath=False):
        e = self.ensemble
        with e.lock:
            self._check()
            if path in e.nodes:
                raise NodeExistsError()
            fired = []
            if _parent(path) not in e.nodes:
                if not makepath:
                    raise NoNodeError()
                fired += self._ensure(_parent(path))
            fired += e.add_node(path, value, self.session_id if ephemeral else 0)
        e.fire(fired)
        return path

    def _ensure(self, path: str) -> list:
        fired = []
        parts = [p for p in path.split("/") if p]
        current = ""
        for part in parts:
            current += "/" + part
            if current not in self.ensemble.nodes:
                fired += self.ensemble.add_node(current, b"", 0)
        return fired

    def set(self, path, value):
        e = self.ensemble
        with e.lock:
            self._check()
            if path not in e.nodes:
                raise NoNodeError()
            node = e.nodes[path]
            node.data = value
            node.version += 1
            stat = e.stat(path)
            fired = e.pop_watches(e.data_watches, path, EventType.CHANGED)
        e.fire(fired)
        return stat

    def delete(self, path, version=-1, recursive=False):
        e = self.ensemble
        with e.lock:
            self._check()
            if path not in e.nodes:
                raise NoNodeError()
            if e.children(path):
                raise NotEmptyError()
            fired = e.remove_node(path)
        e.fire(fired)
        return True

    def exists(self, path, watch=None):
        e = self.ensemble
        with e.lock:
            self._check()
            self._watch(e.data_watches, path, watch)
            return e.stat(path) if path in e.nodes else None

    def get(self, path, watch=None):
        e = self.ensemble
        with e.lock:
            self._check()
            if path not in e.nodes:
                raise NoNodeError()
            self._watch(e.data_watches, path, watch)
            return e.nodes[path].data, e.stat(path)

    def get_children(self, path, watch=None):
        e = self.ensemble
        with e.lock:
            self._check()
            if path not in e.nodes:
                raise NoNodeError()
            self._watch(e.child_watches, path, watch)
            return e.children(path)

    # -- session controls -----------------------------------------------------

    def _notify(self, state) -> None:
        for listener in list(self._listeners):
            listener(state)

    def suspend(self) -> None:
        self._connected = False
        self._notify(KazooState.SUSPENDED)

    def resume(self) -> None:
        self._connected = True
        self._notify(KazooState.CONNECTED)

    def expire_session(self) -> None:
        self._connected = False
        self.ensemble.fire(self.ensemble.expire(self))
        self._notify(KazooState.LOST)

    def reconnect(self) -> None:
        self.session_id = self.ensemble.new_session_id()
        self._connected = True
        self._notify(KazooState.CONNECTED)

    def kill_session(self) -> None:
        self.expire_session()
        self.reconnect()


def _wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def ensemble():
    return FakeEnsemble()


@pytest.fixture
def zk(ensemble):
    return ensemble.client()


@pytest.fixture
def monitor(zk):
    m = SessionMonitor(zk)
    yield m
    m.close()


class RecordingListener:
    """Endpoint listener that keeps every callback in order."""

    def __init__(self):
        self.lock = threading.Lock()
        self.events: list = []

    def on_add(self, endpoint):
        with self.lock:
            self.events.append(("add", endpoint))

    def on_remove(self, endpoint):
        with self.lock:
            self.events.append(("remove", endpoint))

    def snapshot(self) -> list:
        with self.lock:
            return list(self.events)


@pytest.fixture
def recorder():
    return RecordingListener()
