"""Prometheus counters for the event pipeline."""

from prometheus_client import CollectorRegistry, Counter

EVENTS_PUBLISHED = Counter(
    "clinicflow_events_published_total",
    "Domain events appended to the event log",
    ["event_type"],
)
EVENT_PUBLISH_FAILURES = Counter(
    "clinicflow_event_publish_failures_total",
    "Domain events that could not be appended to the event log",
)
EVENTS_CONSUMED = Counter(
    "clinicflow_events_consumed_total",
    "Event log entries processed by the fanout consumer",
    ["event_type", "outcome"],
)
NOTIFICATIONS_CREATED = Counter(
    "clinicflow_notifications_created_total",
    "Notification rows created by the fanout service",
)
NOTIFICATIONS_DUPLICATE = Counter(
    "clinicflow_notifications_duplicate_total",
    "Derived notifications skipped because they already existed",
)
POST_COMMIT_HOOK_FAILURES = Counter(
    "clinicflow_post_commit_hook_failures_total",
    "Post-commit side effects that failed after retries",
    ["hook"],
)
PUSH_DELIVERED = Counter(
    "clinicflow_push_delivered_total",
    "Notifications queued for a live push connection",
)
PUSH_DROPPED = Counter(
    "clinicflow_push_dropped_total",
    "Notifications dropped because a connection's send queue was full",
)

PIPELINE_METRICS = (
    EVENTS_PUBLISHED,
    EVENT_PUBLISH_FAILURES,
    EVENTS_CONSUMED,
    NOTIFICATIONS_CREATED,
    NOTIFICATIONS_DUPLICATE,
    POST_COMMIT_HOOK_FAILURES,
    PUSH_DELIVERED,
    PUSH_DROPPED,
)


def create_registry() -> CollectorRegistry:
    """
    Registry for one application instance.

    HTTP metrics of each app are registered here, so several apps can live in
    one process; the pipeline counters are shared by all of them.
    """
    registry = CollectorRegistry()
    for metric in PIPELINE_METRICS:
        registry.register(metric)
    return registry
