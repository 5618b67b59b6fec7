"""Admin application for the registry/discovery runtime.

Creates the FastAPI app, wires routes, configures logging, and exposes health,
watched-endpoint and Prometheus metrics endpoints.
"""

from __future__ import annotations

import logging
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from soa_discovery.api.routes import router
from soa_discovery.core.config import Settings, new_client, settings as default_settings
from soa_discovery.core.logging import setup_logging
from soa_discovery.metrics.prometheus import metrics_router
from soa_discovery.services.session import SessionMonitor

log = logging.getLogger("soa.api")


def create_app(client=None, cfg: Optional[Settings] = None) -> FastAPI:
    """Build the admin app.

    With ``client`` given the app uses that (already started) kazoo client and
    leaves its lifecycle to the caller; otherwise the lifespan creates one from
    ``cfg`` and stops it on shutdown.
    """
    cfg = cfg or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Own the kazoo client, session monitor and the discoveries started by requests."""
        setup_logging()
        owned = client is None
        zk = new_client(cfg) if owned else client
        if owned:
            log.info("connecting to ZooKeeper at %s", cfg.hosts)
            zk.start()
        monitor = SessionMonitor(zk)
        app.state.client = zk
        app.state.monitor = monitor
        app.state.root = cfg.root
        app.state.discoveries = {}
        app.state.discoveries_lock = threading.Lock()
        try:
            yield
        finally:
            for discovery in app.state.discoveries.values():
                discovery.close()
            monitor.close()
            if owned:
                zk.stop()
                zk.close()

    app = FastAPI(title="Service Registry Admin", version="0.1.0", lifespan=lifespan)
    app.include_router(router)
    app.include_router(metrics_router)
    return app


app = create_app()
