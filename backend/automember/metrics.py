"""Prometheus metrics for ingestion and approval observability."""
from __future__ import annotations

from prometheus_client import Counter, Histogram


ORDERS_RECEIVED_TOTAL = Counter(
    "automember_orders_received_total",
    "Order webhooks received by outcome",
    ["outcome"],
)

STAGING_RECORDS_CREATED_TOTAL = Counter(
    "automember_staging_records_created_total",
    "Staging records created from order line items",
)

STAGING_TRANSITIONS_TOTAL = Counter(
    "automember_staging_transitions_total",
    "Staging record status transitions",
    ["from_status", "to_status"],
)

APPROVALS_TOTAL = Counter(
    "automember_approvals_total",
    "Approval attempts by path and outcome",
    ["path", "outcome"],
)

AUDIT_ENTRIES_TOTAL = Counter(
    "automember_audit_entries_total",
    "Audit log entries appended",
    ["action"],
)

CARD_NUMBER_COLLISIONS_TOTAL = Counter(
    "automember_card_number_collisions_total",
    "Generated card numbers that already existed in the registry",
)

ORPHANED_CUSTOMERS_TOTAL = Counter(
    "automember_orphaned_customers_total",
    "Customers created in the registry whose card attach step failed",
)

REGISTRY_LATENCY_SECONDS = Histogram(
    "automember_registry_latency_seconds",
    "Registry operation latency",
    ["operation"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
