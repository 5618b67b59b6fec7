from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, generate_latest

metrics_router = APIRouter()

SESSION_TRANSITIONS = Counter(
    "soa_session_transitions_total", "ZooKeeper session state transitions", ["state"]
)
REGISTRY_OPERATIONS = Counter(
    "soa_registry_operations_total", "Register/unregister/replay calls", ["operation", "outcome"]
)
DISCOVERY_EVENTS = Counter(
    "soa_discovery_events_total", "Endpoint add/remove notifications", ["service", "event"]
)
DISCOVERED_ENDPOINTS = Gauge(
    "soa_discovery_endpoints", "Endpoints currently visible per watched service", ["service"]
)


@metrics_router.get("/metrics")
async def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
