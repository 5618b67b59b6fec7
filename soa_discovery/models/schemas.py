"""Pydantic models shared by the registry, discovery and admin API."""
from __future__ import annotations

import json
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from soa_discovery.core.errors import InvalidEndpointError

# One path segment: non-empty, no slashes.
_SEGMENT = r"^[^/]+$"


class ConnectionState(str, Enum):
    """Lifecycle of one coordination-client session."""
    CONNECTED = "CONNECTED"
    SUSPENDED = "SUSPENDED"
    LOST = "LOST"
    RECONNECTED = "RECONNECTED"


def service_path(root: str, service_name: str) -> str:
    """Path of the node whose children are the endpoints of ``service_name``."""
    return f"/{root.strip('/')}/{service_name}"


class Endpoint(BaseModel):
    """
    One instance of a named service.

    Identity is ``(service_name, id)``: two endpoints that differ only in
    payload compare equal and hash the same. The payload is opaque to this
    package; services usually put a JSON document describing their URLs in it.

    Stored in ZooKeeper as UTF-8 JSON ``{"service": ..., "id": ..., "payload": ...}``.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    service_name: str = Field(alias="service", min_length=1, pattern=_SEGMENT)
    id: str = Field(min_length=1, pattern=_SEGMENT)
    payload: Optional[str] = None

    def __init__(self, **data: Any) -> None:
        try:
            super().__init__(**data)
        except ValidationError as e:
            raise InvalidEndpointError(f"invalid endpoint {data!r}: {e}") from e

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Endpoint):
            return NotImplemented
        return (self.service_name, self.id) == (other.service_name, other.id)

    def __hash__(self) -> int:
        return hash((self.service_name, self.id))

    def path(self, root: str) -> str:
        """ZooKeeper path of this endpoint's node under ``root``."""
        return f"{service_path(root, self.service_name)}/{self.id}"

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> "Endpoint":
        """Parse node content written by :meth:`to_bytes`."""
        try:
            raw = json.loads(data.decode("utf-8"))
        except (AttributeError, UnicodeDecodeError, ValueError) as e:
            raise InvalidEndpointError(f"unreadable endpoint data: {e}") from e
        if not isinstance(raw, dict):
            raise InvalidEndpointError(f"endpoint data must be a JSON object, got {type(raw).__name__}")
        return cls(**raw)


class EndpointOut(BaseModel):
    """Output model for endpoints listed by the admin API."""
    service: str
    id: str
    payload: Optional[str] = None

    @classmethod
    def from_endpoint(cls, endpoint: Endpoint) -> "EndpointOut":
        return cls(service=endpoint.service_name, id=endpoint.id, payload=endpoint.payload)
