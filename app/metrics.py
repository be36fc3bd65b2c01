"""Business metrics for Servly, exported on /metrics."""

from prometheus_client import Counter, Histogram

# Booking lifecycle counters
BOOKINGS_CREATED = Counter(
    "servly_bookings_created_total",
    "Total bookings created",
    ["pricing_type"],
)
BOOKINGS_CANCELLED = Counter(
    "servly_bookings_cancelled_total",
    "Total bookings cancelled",
    ["cancelled_by", "refunded"],
)
BOOKINGS_COMPLETED = Counter(
    "servly_bookings_completed_total",
    "Total bookings confirmed as completed",
    ["source"],
)

# Payment counters
PAYMENTS_SUCCEEDED = Counter(
    "servly_payments_succeeded_total",
    "Total payments settled",
    ["kind"],
)
PAYMENTS_REFUNDED = Counter(
    "servly_payments_refunded_total",
    "Total refunds issued",
    ["initiated_by"],
)

# Provider payouts by outcome (paid_out, transferred, queued, failed)
PAYOUTS = Counter(
    "servly_payouts_total",
    "Provider payout attempts by outcome",
    ["outcome"],
)

# Stripe API call duration
STRIPE_CALL_DURATION = Histogram(
    "servly_stripe_call_duration_seconds",
    "Duration of Stripe API calls",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
)

# Scheduler job counters
SCHEDULER_JOB_RUNS = Counter(
    "servly_scheduler_job_runs_total",
    "Total scheduler job executions",
    ["job_name", "status"],
)

WEBHOOK_EVENTS = Counter(
    "servly_webhook_events_total",
    "Stripe webhook events received",
    ["event_type", "outcome"],
)
