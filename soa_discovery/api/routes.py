"""Read-only admin routes for the membership layer.

Lets operators see the session state and the endpoints currently visible for
a service, using the same discovery machinery consumers use.
"""
from __future__ import annotations

from logging import getLogger
from typing import List

from fastapi import APIRouter, HTTPException, Request

from soa_discovery.core.errors import InvalidArgumentError
from soa_discovery.models.schemas import EndpointOut
from soa_discovery.services.discovery import HostDiscovery

log = getLogger("soa.api")
router = APIRouter()


def _discovery_for(request: Request, service_name: str) -> HostDiscovery:
    """Return the app-scoped discovery for ``service_name``, starting it on first use."""
    state = request.app.state
    with state.discoveries_lock:
        discovery = state.discoveries.get(service_name)
        if discovery is None:
            discovery = HostDiscovery(
                state.client, service_name, monitor=state.monitor, root=state.root,
            )
            state.discoveries[service_name] = discovery
            log.info("watching service %s", service_name)
        return discovery


@router.get("/health")
async def health(request: Request):
    """Liveness plus the current ZooKeeper session state."""
    return {"status": "ok", "session": request.app.state.monitor.state.value}


# Plain def: starting a discovery blocks on ZooKeeper, so FastAPI runs it in its threadpool.
@router.get("/registry/services/{service_name}/endpoints", response_model=List[EndpointOut])
def list_endpoints(service_name: str, request: Request):
    """List the endpoints currently registered for a service."""
    try:
        discovery = _discovery_for(request, service_name)
    except InvalidArgumentError as e:
        raise HTTPException(422, detail=str(e))
    endpoints = sorted(discovery.get_endpoints(), key=lambda ep: ep.id)
    return [EndpointOut.from_endpoint(ep) for ep in endpoints]
