"""Exceptions raised by the registry, discovery and session monitor."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from kazoo.exceptions import ConnectionLoss, OperationTimeoutError, SessionExpiredError
from kazoo.handlers.threading import KazooTimeoutError


class ServiceDiscoveryError(Exception):
    """Base class for every error raised by this package."""


class InvalidEndpointError(ServiceDiscoveryError, ValueError):
    """Endpoint identity is missing or malformed."""


class InvalidArgumentError(ServiceDiscoveryError, ValueError):
    """A constructor or method argument has an unusable value."""


class NullArgumentError(InvalidArgumentError, TypeError):
    """A required argument was None."""


class RegistrationError(ServiceDiscoveryError):
    """ZooKeeper could not be reached while registering or unregistering."""


class ConnectionLossError(ServiceDiscoveryError):
    """
    A coordination call failed because the session is unusable.

    Only raised internally: discovery and replay catch it and wait for the
    session monitor to report the connection back.
    """


class ClosedError(ServiceDiscoveryError):
    """Operation attempted on a closed object."""


# kazoo errors that mean "the session cannot serve requests right now".
# ConnectionClosedError is a SessionExpiredError subclass.
_CONNECTION_ERRORS = (ConnectionLoss, SessionExpiredError, OperationTimeoutError, KazooTimeoutError)


@contextmanager
def connection_errors() -> Iterator[None]:
    """Translate kazoo connectivity failures into :class:`ConnectionLossError`."""
    try:
        yield
    except _CONNECTION_ERRORS as e:
        raise ConnectionLossError(str(e) or type(e).__name__) from e


def require(value, name: str):
    """Return ``value``, raising :class:`NullArgumentError` when it is None."""
    if value is None:
        raise NullArgumentError(f"{name} must not be None")
    return value
