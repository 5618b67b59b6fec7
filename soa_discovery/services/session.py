"""ZooKeeper session lifecycle tracking.

kazoo reports CONNECTED/SUSPENDED/LOST from its connection thread and expects
listeners to return immediately. The SessionMonitor turns those reports into
:class:`ConnectionState` transitions and re-dispatches them, in order, on a
single worker thread it owns. Discovery instances also run their watch-driven
refreshes on that worker, so everything that mutates registry or discovery
state for one client handle happens on one serial stream.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Protocol, TypeVar

from kazoo.protocol.states import KazooState

from soa_discovery.core.errors import ClosedError, require
from soa_discovery.metrics.prometheus import SESSION_TRANSITIONS
from soa_discovery.models.schemas import ConnectionState

log = logging.getLogger("soa.session")

T = TypeVar("T")


class SessionListener(Protocol):
    """Receives session transitions from a :class:`SessionMonitor`."""

    def state_changed(self, state: ConnectionState) -> None:
        ...


def next_state(current: ConnectionState, reported: str) -> Optional[ConnectionState]:
    """
    Map a kazoo state report onto the transition it represents.

    Returns None when the report does not change anything (CONNECTED while
    already connected, a repeated SUSPENDED).
    """
    if reported == KazooState.SUSPENDED:
        new = ConnectionState.SUSPENDED
    elif reported == KazooState.LOST:
        new = ConnectionState.LOST
    elif reported == KazooState.CONNECTED:
        if current in (ConnectionState.SUSPENDED, ConnectionState.LOST):
            new = ConnectionState.RECONNECTED
        else:
            new = ConnectionState.CONNECTED
    else:
        return None
    if new == current or (new == ConnectionState.CONNECTED and current == ConnectionState.RECONNECTED):
        return None
    return new


class SessionMonitor:
    """
    Shared per kazoo client. Pass the same monitor to every registry and
    discovery built on that client so they observe one ordered event stream.
    """

    def __init__(self, client):
        self._client = require(client, "client")
        self._lock = threading.Lock()
        self._listeners: list[SessionListener] = []
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="soa-session")
        self._worker: Optional[threading.Thread] = None
        # Attach before reading `connected` so a connection completing in
        # between is either seen here or reported to the listener; reports
        # arriving meanwhile wait on the lock for the initial state.
        with self._lock:
            client.add_listener(self._on_kazoo_state)
            # Not connected yet: the first CONNECTED is reported as RECONNECTED
            # so dependants rebuild once the session exists.
            self._state = ConnectionState.CONNECTED if client.connected else ConnectionState.SUSPENDED

    @property
    def client(self):
        return self._client

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, listener: SessionListener) -> None:
        require(listener, "listener")
        with self._lock:
            if self._closed:
                raise ClosedError("session monitor is closed")
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: SessionListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def submit(self, fn: Callable[..., T], *args) -> Optional[Future]:
        """Queue ``fn`` on the dispatch worker; returns None once closed."""
        with self._lock:
            if self._closed:
                return None
            return self._executor.submit(self._run, fn, *args)

    def call(self, fn: Callable[..., T], *args) -> T:
        """Run ``fn`` on the dispatch worker and wait for its result."""
        if threading.current_thread() is self._worker:
            return fn(*args)
        future = self.submit(fn, *args)
        if future is None:
            raise ClosedError("session monitor is closed")
        return future.result()

    def _run(self, fn, *args):
        self._worker = threading.current_thread()
        return fn(*args)

    def _on_kazoo_state(self, reported) -> None:
        # Runs on kazoo's connection thread; must not block.
        with self._lock:
            if self._closed:
                return
            new = next_state(self._state, reported)
            if new is None:
                return
            self._state = new
            self._executor.submit(self._run, self._dispatch, new)

    def _dispatch(self, state: ConnectionState) -> None:
        log.info("ZooKeeper session %s", state.value)
        SESSION_TRANSITIONS.labels(state=state.value).inc()
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener.state_changed(state)
            except Exception:
                log.exception("session listener %r failed on %s", listener, state.value)

    def close(self) -> None:
        """Detach from the kazoo client and stop the dispatch worker."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._listeners.clear()
        self._client.remove_listener(self._on_kazoo_state)
        # Waiting from the worker itself would deadlock.
        self._executor.shutdown(wait=threading.current_thread() is not self._worker)

    def __enter__(self) -> "SessionMonitor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
