"""ZooKeeper-backed service registry.

Each registered endpoint is an ephemeral node at ``/<root>/<service>/<id>``
holding the serialized endpoint. ZooKeeper deletes those nodes when our
session dies; the registry remembers what it registered and writes the nodes
again when the session monitor reports RECONNECTED.
"""
from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from kazoo.exceptions import NodeExistsError, NoNodeError

from soa_discovery.core.errors import (
    ClosedError,
    ConnectionLossError,
    RegistrationError,
    connection_errors,
    require,
)
from soa_discovery.metrics.prometheus import REGISTRY_OPERATIONS
from soa_discovery.models.schemas import ConnectionState, Endpoint
from soa_discovery.services.session import SessionMonitor

log = logging.getLogger("soa.registry")

DEFAULT_ROOT = "services"


class ServiceRegistry:
    """Registers endpoints as ephemeral nodes and replays them after session loss."""

    def __init__(self, client, monitor: Optional[SessionMonitor] = None, root: str = DEFAULT_ROOT):
        self._client = require(client, "client")
        self._root = require(root, "root")
        self._lock = threading.Lock()
        # path -> endpoint we intend to have registered
        self._registered: Dict[str, Endpoint] = {}
        self._closed = False
        self._owns_monitor = monitor is None
        self._monitor = monitor if monitor is not None else SessionMonitor(client)
        self._monitor.add_listener(self)

    def register(self, endpoint: Endpoint) -> bool:
        """Create (or overwrite) the endpoint's ephemeral node."""
        require(endpoint, "endpoint")
        self._check_open()
        path = endpoint.path(self._root)
        # Recorded before the write: a replay that finishes after our write
        # must see this endpoint and not put its older copy back.
        with self._lock:
            previous = self._registered.get(path)
            self._registered[path] = endpoint
        try:
            self._write(path, endpoint)
        except ConnectionLossError as e:
            with self._lock:
                if self._registered.get(path) is endpoint:
                    if previous is None:
                        del self._registered[path]
                    else:
                        self._registered[path] = previous
            REGISTRY_OPERATIONS.labels(operation="register", outcome="error").inc()
            raise RegistrationError(f"could not register {endpoint.service_name}/{endpoint.id}: {e}") from e
        REGISTRY_OPERATIONS.labels(operation="register", outcome="ok").inc()
        log.info("registered %s/%s", endpoint.service_name, endpoint.id)
        return True

    def unregister(self, endpoint: Endpoint) -> bool:
        """
        Delete the endpoint's node; an already missing node is not an error.

        The endpoint is dropped from the registered-set before the delete, so
        it is never replayed. If the delete raises :class:`RegistrationError`
        during a suspension, the node survives when the same session resumes
        and :meth:`close` no longer knows about it: callers must retry
        ``unregister`` once the connection is back.
        """
        require(endpoint, "endpoint")
        self._check_open()
        path = endpoint.path(self._root)
        # Forget it first so a concurrent replay does not bring it back.
        with self._lock:
            self._registered.pop(path, None)
        try:
            self._delete(path)
        except ConnectionLossError as e:
            REGISTRY_OPERATIONS.labels(operation="unregister", outcome="error").inc()
            raise RegistrationError(f"could not unregister {endpoint.service_name}/{endpoint.id}: {e}") from e
        REGISTRY_OPERATIONS.labels(operation="unregister", outcome="ok").inc()
        log.info("unregistered %s/%s", endpoint.service_name, endpoint.id)
        return True

    def registered(self) -> frozenset:
        """Snapshot of the endpoints this registry currently holds."""
        with self._lock:
            return frozenset(self._registered.values())

    def state_changed(self, state: ConnectionState) -> None:
        if state == ConnectionState.RECONNECTED:
            self._replay()

    def _replay(self) -> None:
        with self._lock:
            if self._closed:
                return
            pending = dict(self._registered)
        if pending:
            log.info("re-registering %d endpoint(s) after reconnect", len(pending))
        for path, endpoint in pending.items():
            try:
                self._replay_one(path, endpoint)
            except ConnectionLossError as e:
                REGISTRY_OPERATIONS.labels(operation="replay", outcome="error").inc()
                log.warning("replay of %s failed, waiting for next reconnect: %s", path, e)
                return
            REGISTRY_OPERATIONS.labels(operation="replay", outcome="ok").inc()

    def _replay_one(self, path: str, endpoint: Endpoint) -> None:
        """Write ``endpoint`` until the node matches what the registered-set holds."""
        while True:
            self._write(path, endpoint)
            with self._lock:
                current = self._registered.get(path)
            if current is None:
                # Unregistered while the write was in flight.
                self._delete(path)
                return
            if current is endpoint:
                return
            # Re-registered with a new payload meanwhile; ours may have overwritten it.
            endpoint = current

    def _write(self, path: str, endpoint: Endpoint) -> None:
        data = endpoint.to_bytes()
        with connection_errors():
            try:
                self._client.create(path, data, ephemeral=True, makepath=True)
                return
            except NodeExistsError:
                pass
            stat = self._client.exists(path)
            if stat is not None and stat.ephemeralOwner == self._client.client_id[0]:
                self._client.set(path, data)
                return
            # Left over from an expired session (or persistent): take it over.
            try:
                self._client.delete(path)
            except NoNodeError:
                pass
            self._client.create(path, data, ephemeral=True, makepath=True)

    def _delete(self, path: str) -> None:
        with connection_errors():
            try:
                self._client.delete(path)
            except NoNodeError:
                pass

    def _check_open(self) -> None:
        if self._closed:
            raise ClosedError("service registry is closed")

    def close(self) -> None:
        """Stop replaying and remove every node this registry still owns."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            leftovers = list(self._registered)
            self._registered.clear()
        self._monitor.remove_listener(self)
        for path in leftovers:
            try:
                self._delete(path)
            except ConnectionLossError as e:
                # The node dies with the session anyway.
                log.warning("could not remove %s on close: %s", path, e)
        if self._owns_monitor:
            self._monitor.close()

    def __enter__(self) -> "ServiceRegistry":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
