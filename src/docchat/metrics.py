"""Prometheus counters for the chat service."""

from prometheus_client import CollectorRegistry, Counter

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

# Core operational metrics for monitoring
REQUESTS = Counter("requests_total", "Total HTTP requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total HTTP requests that failed", registry=CUSTOM_REGISTRY)
TURNS_STARTED = Counter("turns_started_total", "Chat turns that reached the model", registry=CUSTOM_REGISTRY)
TURNS_COMPLETED = Counter("turns_completed_total", "Chat turns persisted end to end", registry=CUSTOM_REGISTRY)
TURNS_FAILED = Counter("turns_failed_total", "Chat turns that failed upstream", registry=CUSTOM_REGISTRY)
ATTACHMENTS_DEGRADED = Counter(
    "attachments_degraded_total", "Attachments dropped to a textual mention", registry=CUSTOM_REGISTRY
)
RESPONSES_NOT_SAVED = Counter(
    "responses_not_saved_total", "Streamed responses that could not be persisted", registry=CUSTOM_REGISTRY
)
