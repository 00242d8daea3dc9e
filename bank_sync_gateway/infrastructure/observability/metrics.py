"""Prometheus metrics for sync outcomes, webhook ingress, escalation and the task queue"""

from prometheus_client import Counter, Histogram

# Sync metrics
sync_counter = Counter(
    "bank_sync_total",
    "Connection sync attempts by outcome",
    ["outcome"],  # success | error | login_required | failed
)

transactions_reconciled_counter = Counter(
    "transactions_reconciled_total",
    "Provider transactions merged into local storage",
    ["result"],  # created | updated | skipped
)

# Provider metrics
provider_failures_counter = Counter(
    "provider_request_failures_total",
    "Failed provider API calls",
    ["kind"],  # timeout | network | auth | rate_limited | server | client | invalid_response
)

# Webhook ingress
webhook_received_counter = Counter(
    "webhook_received_total",
    "Inbound provider webhooks",
    ["code", "outcome"],  # outcome: accepted | forbidden | invalid | unknown_item
)

# Escalation
notification_counter = Counter(
    "connection_notifications_total",
    "Disconnected-connection notifications queued",
)

connections_disabled_counter = Counter(
    "connections_disabled_total",
    "Abandoned connections auto-disabled",
)

expiry_notice_counter = Counter(
    "connection_expiry_notices_total",
    "Consent expiry notices queued",
    ["level"],  # warning | critical
)

notification_latency_histogram = Histogram(
    "notification_latency_seconds",
    "Notification service response time",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

notification_failure_counter = Counter(
    "notification_failures_total",
    "Failed notification deliveries",
)

# Task queue
task_runs_counter = Counter(
    "task_runs_total",
    "Task executions by outcome",
    ["task", "outcome"],  # completed | retrying | failed
)

task_duration_histogram = Histogram(
    "task_duration_seconds",
    "Task execution time",
    ["task"],
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_reconciliation(created: int, updated: int, skipped: int) -> None:
    """Record per-batch reconciliation counts"""
    transactions_reconciled_counter.labels(result="created").inc(created)
    transactions_reconciled_counter.labels(result="updated").inc(updated)
    transactions_reconciled_counter.labels(result="skipped").inc(skipped)
