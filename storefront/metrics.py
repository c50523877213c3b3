"""
Prometheus metrics: status transitions (accepted/rejected), stock movements, outbound webhooks, Stripe events.
"""
from prometheus_client import Counter, generate_latest

orders_created_total = Counter(
    "orders_created_total",
    "Total orders persisted, by initial status",
    ["order_status"],
)

order_status_transitions_total = Counter(
    "order_status_transitions_total",
    "Total accepted order status changes",
    ["from_status", "to_status"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total order updates rejected due to an invalid status transition",
    ["from_status", "to_status"],
)

# Stock ledger: reserve on creation, restore on cancel/refund
stock_adjustments_total = Counter(
    "stock_adjustments_total",
    "Total product stock adjustments applied",
    ["direction"],
)

# Dispatcher: kind = order_email | refund_trigger, outcome = sent | failed | skipped
outbound_webhooks_total = Counter(
    "outbound_webhooks_total",
    "Total outbound webhook calls by outcome",
    ["kind", "outcome"],
)

stripe_events_total = Counter(
    "stripe_events_total",
    "Total verified Stripe webhook events by outcome",
    ["event_type", "outcome"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
