"""Prometheus metrics definitions."""

from prometheus_client import Counter, Gauge, Histogram

# Event metrics
EVENTS_RECEIVED = Counter(
    "escalator_events_received_total",
    "Total number of canonical events received",
    ["event_kind"],
)

EVENTS_PROCESSED = Counter(
    "escalator_events_processed_total",
    "Total number of events processed",
    ["event_kind", "status"],
)

# Rule metrics
RULES_MATCHED = Counter(
    "escalator_rules_matched_total",
    "Total number of rule matches",
    ["trigger_type"],
)

ACTIONS_EXECUTED = Counter(
    "escalator_actions_executed_total",
    "Total number of executed actions by outcome",
    ["action_type", "outcome"],
)

ACTION_LATENCY = Histogram(
    "escalator_action_latency_seconds",
    "Action execution latency in seconds",
    ["action_type"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Scanner metrics
ESCALATIONS_FIRED = Counter(
    "escalator_escalations_fired_total",
    "Total escalation levels claimed by the scanner",
    ["level"],
)

SCAN_DURATION = Histogram(
    "escalator_scan_duration_seconds",
    "Duration of a full timer/SLA sweep",
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0),
)

ITEMS_SCANNED = Gauge(
    "escalator_items_scanned",
    "Open items inspected in the last sweep",
)

# Notification metrics
NOTIFICATIONS_QUEUED = Counter(
    "escalator_notifications_queued_total",
    "Total notifications handed to the dispatch queue",
    ["priority"],
)
