"""Configuration for the registry/discovery runtime.

Provides strongly-typed settings using Pydantic, a loader from environment
variables with defaults suitable for local development, and a factory for the
kazoo client those settings describe.
"""

from __future__ import annotations

import os
from typing import Optional

from kazoo.client import KazooClient
from kazoo.retry import KazooRetry
from pydantic import BaseModel, Field, ValidationError


class Settings(BaseModel):
    """Pydantic settings for the ZooKeeper connection and node layout."""
    zk_connect_string: str = Field("localhost:2181", min_length=1)
    # Optional chroot prefix applied to every path, e.g. "prod"
    zk_namespace: Optional[str] = None
    session_timeout_s: float = Field(10.0, gt=0)
    # Endpoints live under /<root>/<service>/<id>
    root: str = Field("services", min_length=1)

    # Connection retry policy handed to kazoo (-1 = retry forever)
    retry_max_tries: int = -1
    retry_delay_s: float = Field(0.1, gt=0)
    retry_backoff: float = Field(2.0, ge=1)
    retry_max_delay_s: float = Field(60.0, gt=0)

    @property
    def hosts(self) -> str:
        """Connect string with the namespace appended as a kazoo chroot."""
        if not self.zk_namespace:
            return self.zk_connect_string
        return f"{self.zk_connect_string}/{self.zk_namespace.strip('/')}"


def load_settings() -> Settings:
    """Load settings from environment variables and return a Settings object."""
    try:
        return Settings(
            zk_connect_string=os.getenv("ZK_CONNECT_STRING", "localhost:2181"),
            zk_namespace=os.getenv("ZK_NAMESPACE") or None,
            session_timeout_s=float(os.getenv("ZK_SESSION_TIMEOUT_S", "10.0")),
            root=os.getenv("ZK_ROOT", "services"),
            retry_max_tries=int(os.getenv("ZK_RETRY_MAX_TRIES", "-1")),
            retry_delay_s=float(os.getenv("ZK_RETRY_DELAY_S", "0.1")),
            retry_backoff=float(os.getenv("ZK_RETRY_BACKOFF", "2.0")),
            retry_max_delay_s=float(os.getenv("ZK_RETRY_MAX_DELAY_S", "60.0")),
        )
    except (ValidationError, ValueError) as e:
        raise RuntimeError(f"Invalid configuration: {e}") from e


def new_client(cfg: Settings) -> KazooClient:
    """Build an unstarted KazooClient for ``cfg``; the caller starts and stops it."""
    retry = KazooRetry(
        max_tries=cfg.retry_max_tries,
        delay=cfg.retry_delay_s,
        backoff=cfg.retry_backoff,
        max_delay=cfg.retry_max_delay_s,
    )
    return KazooClient(
        hosts=cfg.hosts,
        timeout=cfg.session_timeout_s,
        connection_retry=retry,
    )


settings = load_settings()
