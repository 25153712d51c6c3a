"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter, Gauge, Histogram

# Ledger metrics
ledger_entries_total = Counter(
    "ledger_entries_total",
    "Balance transactions written",
    labelnames=["type", "direction"],  # direction: debit, credit
)

ledger_amount_usd_total = Counter(
    "ledger_amount_usd_total",
    "Absolute USD amount moved through the ledger",
    labelnames=["type", "direction"],
)

ledger_conflicts_total = Counter(
    "ledger_conflicts_total",
    "Ledger writes aborted by lock or serialization conflicts",
)

# Usage metrics
usage_cost_usd_total = Counter(
    "usage_cost_usd_total",
    "Metered provider cost in USD",
    labelnames=["resource"],  # sandbox, storage, deployment, database, ai
)

usage_events_total = Counter(
    "usage_events_total",
    "Metered usage events",
    labelnames=["resource"],
)

sandbox_sessions_open = Gauge(
    "sandbox_sessions_open",
    "Sandbox sessions opened but not yet finalized",
)

ai_credits_consumed_total = Counter(
    "ai_credits_consumed_total",
    "Subscription credits drawn by AI usage",
)

# Subscription metrics
plan_changes_total = Counter(
    "plan_changes_total",
    "Plan changes by kind",
    labelnames=["kind"],  # upgrade, downgrade_scheduled, downgrade_applied, lateral
)

grace_period_transitions_total = Counter(
    "grace_period_transitions_total",
    "Grace period state transitions",
    labelnames=["transition"],  # started, recovered, expired
)

grace_period_reminders_total = Counter(
    "grace_period_reminders_total",
    "Grace period reminder notifications sent",
    labelnames=["day"],
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Provider webhook events by outcome",
    labelnames=["event_type", "outcome"],  # completed, failed, duplicate
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected at signature verification",
    labelnames=["reason"],  # missing, mismatch
)

webhook_retries_total = Counter(
    "webhook_retries_total",
    "Failed webhook events retried",
    labelnames=["event_type"],
)

# HTTP metrics
http_requests_total = Counter(
    "billing_http_requests_total",
    "API requests by route template and status",
    labelnames=["method", "route", "status_code"],
)

http_request_duration_seconds = Histogram(
    "billing_http_request_duration_seconds",
    "API request latency by route template",
    labelnames=["method", "route"],
    buckets=[0.005, 0.02, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5],
)
