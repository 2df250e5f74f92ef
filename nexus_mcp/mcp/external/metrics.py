from __future__ import annotations

from prometheus_client import Counter, Histogram, Gauge

from .events import ProviderEvent


NEXUS_UPSTREAM_REQUESTS = Counter(
    "nexus_upstream_requests_total",
    "Total proxied requests to provider MCP servers",
    labelnames=("provider", "operation", "result"),
)

NEXUS_UPSTREAM_LATENCY = Histogram(
    "nexus_upstream_request_latency_seconds",
    "Latency for proxied provider requests",
    labelnames=("provider", "operation"),
    buckets=(0.05, 0.1, 0.2, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0),
)

NEXUS_PROVIDER_CONNECTED = Gauge(
    "nexus_provider_connected",
    "Connection state of providers (1=connected,0=otherwise)",
    labelnames=("provider",),
)

NEXUS_PROVIDER_EVENTS = Counter(
    "nexus_provider_events_total",
    "Provider state-change events",
    labelnames=("provider", "event"),
)

NEXUS_RECONNECT_SCHEDULED = Counter(
    "nexus_reconnect_scheduled_total",
    "Reconnection attempts scheduled per provider",
    labelnames=("provider",),
)

NEXUS_QUEUE_DEPTH = Gauge(
    "nexus_request_queue_depth",
    "Requests waiting for an updating provider",
    labelnames=("provider",),
)


def metrics_listener(event: ProviderEvent) -> None:
    NEXUS_PROVIDER_EVENTS.labels(provider=event.provider_id, event=event.kind).inc()
    if event.kind == "connected":
        NEXUS_PROVIDER_CONNECTED.labels(provider=event.provider_id).set(1)
    elif event.kind in ("disconnected", "error", "auth_failed"):
        NEXUS_PROVIDER_CONNECTED.labels(provider=event.provider_id).set(0)
    elif event.kind == "reconnect_scheduled":
        NEXUS_RECONNECT_SCHEDULED.labels(provider=event.provider_id).inc()
