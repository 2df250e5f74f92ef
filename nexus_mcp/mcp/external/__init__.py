"""Provider connection layer (supervision, queuing, reconnection, routing).

Modules:
- interfaces: downstream connection contract
- transports: stdio / SSE connections over the mcp client SDK
- errors: normalized error schema
- classifier: failure categories and reconnect eligibility
- retry: reconnection policy and backoff
- request_queue: per-provider FIFO of calls held during updates
- scheduler: reconnect timers
- supervisor: per-provider state machine
- registry: provider map, routing and aggregation
- events: state-change events and dispatcher
- metrics: Prometheus counters/gauges/histograms
"""

__all__ = [
    "interfaces",
    "transports",
    "errors",
    "classifier",
    "retry",
    "request_queue",
    "scheduler",
    "supervisor",
    "registry",
    "events",
    "metrics",
]
