"""Watch-driven host discovery for one service name.

Keeps a local mirror of the children of ``/<root>/<service>`` and tells
listeners about every endpoint that appears or disappears.

Refresh protocol (always on the session monitor's dispatch worker):
  1. ``get_children(path, watch)`` reads the child list and arms the child
     watch in one request, so any later change fires the watch.
  2. ``get(child, watch)`` reads each endpoint and arms a data watch on it,
     so payload overwrites are seen too.
  3. The new map is diffed against the cache, published as a new snapshot,
     then removals and additions are delivered, removals first.

When the session is suspended or lost the cache is emptied (we cannot vouch
for it without a session); on RECONNECTED a full refresh repopulates it.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Protocol

from kazoo.exceptions import NoNodeError

from soa_discovery.core.errors import (
    ClosedError,
    ConnectionLossError,
    InvalidArgumentError,
    InvalidEndpointError,
    connection_errors,
    require,
)
from soa_discovery.metrics.prometheus import DISCOVERED_ENDPOINTS, DISCOVERY_EVENTS
from soa_discovery.models.schemas import ConnectionState, Endpoint, service_path
from soa_discovery.services.registry import DEFAULT_ROOT
from soa_discovery.services.session import SessionMonitor

log = logging.getLogger("soa.discovery")


class EndpointListener(Protocol):
    """Notified as endpoints of a watched service come and go."""

    def on_add(self, endpoint: Endpoint) -> None:
        ...

    def on_remove(self, endpoint: Endpoint) -> None:
        ...


class HostDiscovery:
    """
    Live view of the endpoints registered for ``service_name``.

    Construction blocks until the first read has completed. ``get_endpoints``
    never touches ZooKeeper. After :meth:`close`, ``get_endpoints`` raises
    :class:`ClosedError`.
    """

    def __init__(
        self,
        client,
        service_name: str,
        *,
        monitor: Optional[SessionMonitor] = None,
        root: str = DEFAULT_ROOT,
    ):
        self._client = require(client, "client")
        require(service_name, "service_name")
        if not service_name or "/" in service_name:
            raise InvalidArgumentError(f"invalid service name {service_name!r}")
        self._service_name = service_name
        self._path = service_path(root, service_name)
        self._lock = threading.Lock()
        self._cache: Dict[str, Endpoint] = {}
        self._snapshot: frozenset = frozenset()
        self._listeners: list[EndpointListener] = []
        self._closed = False
        self._owns_monitor = monitor is None
        self._monitor = monitor
        try:
            if self._monitor is None:
                self._monitor = SessionMonitor(client)
            self._monitor.add_listener(self)
            self._monitor.call(self._refresh)
        except BaseException:
            self.close()
            raise

    @property
    def service_name(self) -> str:
        return self._service_name

    def get_endpoints(self) -> frozenset:
        """Point-in-time snapshot of the endpoints currently visible."""
        if self._closed:
            raise ClosedError(f"discovery for {self._service_name} is closed")
        return self._snapshot

    def add_listener(self, listener: EndpointListener) -> None:
        require(listener, "listener")
        with self._lock:
            if self._closed:
                raise ClosedError(f"discovery for {self._service_name} is closed")
            if listener not in self._listeners:
                self._listeners.append(listener)

    def remove_listener(self, listener: EndpointListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # -- event handling (dispatch worker) ------------------------------------

    def state_changed(self, state: ConnectionState) -> None:
        if state in (ConnectionState.SUSPENDED, ConnectionState.LOST):
            self._apply({})
        elif state == ConnectionState.RECONNECTED:
            self._refresh()

    def _on_watch(self, event) -> None:
        # Called on kazoo's callback thread; hand off to the dispatch worker.
        if not self._closed:
            self._monitor.submit(self._refresh)

    def _refresh(self) -> None:
        if self._closed:
            return
        try:
            fresh = self._read()
        except ConnectionLossError as e:
            # The session monitor reports the outage and triggers a rebuild.
            log.warning("refresh of %s failed: %s", self._path, e)
            return
        self._apply(fresh)

    def _read(self) -> Dict[str, Endpoint]:
        fresh: Dict[str, Endpoint] = {}
        with connection_errors():
            try:
                children = self._client.get_children(self._path, watch=self._on_watch)
            except NoNodeError:
                # Nothing registered yet (or path deleted): empty until it exists.
                if self._client.exists(self._path, watch=self._on_watch) is None:
                    return fresh
                children = self._client.get_children(self._path, watch=self._on_watch)
            for child in children:
                try:
                    data, _ = self._client.get(f"{self._path}/{child}", watch=self._on_watch)
                except NoNodeError:
                    # Gone since the listing; the child watch fires for it.
                    continue
                try:
                    endpoint = Endpoint.from_bytes(data)
                except InvalidEndpointError as e:
                    log.warning("ignoring malformed endpoint %s/%s: %s", self._path, child, e)
                    continue
                if endpoint.service_name != self._service_name or endpoint.id != child:
                    log.warning(
                        "ignoring %s/%s: content names %s/%s",
                        self._path, child, endpoint.service_name, endpoint.id,
                    )
                    continue
                fresh[child] = endpoint
        return fresh

    def _apply(self, fresh: Dict[str, Endpoint]) -> None:
        with self._lock:
            if self._closed:
                return
            old = self._cache
            removed = [
                ep for key, ep in old.items()
                if key not in fresh or fresh[key].payload != ep.payload
            ]
            added = [
                ep for key, ep in fresh.items()
                if key not in old or old[key].payload != ep.payload
            ]
            if not removed and not added:
                return
            self._cache = dict(fresh)
            self._snapshot = frozenset(self._cache.values())
            listeners = list(self._listeners)
        DISCOVERED_ENDPOINTS.labels(service=self._service_name).set(len(fresh))
        for ep in removed:
            log.info("%s: endpoint %s removed", self._service_name, ep.id)
            DISCOVERY_EVENTS.labels(service=self._service_name, event="remove").inc()
            self._notify(listeners, "on_remove", ep)
        for ep in added:
            log.info("%s: endpoint %s added", self._service_name, ep.id)
            DISCOVERY_EVENTS.labels(service=self._service_name, event="add").inc()
            self._notify(listeners, "on_add", ep)

    def _notify(self, listeners, method: str, endpoint: Endpoint) -> None:
        for listener in listeners:
            if self._closed:
                return
            try:
                getattr(listener, method)(endpoint)
            except Exception:
                log.exception("listener %r failed in %s(%s)", listener, method, endpoint.id)

    def close(self) -> None:
        """
        Stop watching; safe to call more than once.

        Waits for a notification already running on the dispatch worker, so
        no listener is called after this returns.
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._listeners.clear()
            self._cache = {}
            self._snapshot = frozenset()
        if self._monitor is not None:
            self._monitor.remove_listener(self)
            if self._owns_monitor:
                # Shutting the worker down waits for the running task.
                self._monitor.close()
            elif not self._monitor.closed:
                try:
                    self._monitor.call(lambda: None)
                except ClosedError:
                    # Monitor closed concurrently; its shutdown drained the worker.
                    pass
        DISCOVERED_ENDPOINTS.labels(service=self._service_name).set(0)

    def __enter__(self) -> "HostDiscovery":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
