"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter

# Mandate metrics
mandates_upserted_total = Counter(
    "billing_mandates_upserted_total",
    "Total direct-debit mandate submissions",
    labelnames=["outcome"],  # created, updated
)

mandate_transitions_total = Counter(
    "billing_mandate_transitions_total",
    "Total mandate status transitions",
    labelnames=["status"],
)

# Cycle metrics
cycles_materialized_total = Counter(
    "billing_cycles_materialized_total",
    "Total billing cycles created",
)

# Bank batch metrics
batches_built_total = Counter(
    "billing_batches_built_total",
    "Total direct-debit batch files handled",
    labelnames=["direction", "status"],  # direction: outbound, inbound
)

batch_rows_total = Counter(
    "billing_batch_rows_total",
    "Total response rows processed",
    labelnames=["status"],  # paid, rejected, error
)

# Fallback metrics
fallback_intents_total = Counter(
    "billing_fallback_intents_total",
    "Total fallback intent operations",
    labelnames=["provider", "status"],
)

provider_errors_total = Counter(
    "billing_provider_errors_total",
    "Total fallback provider call failures",
    labelnames=["provider", "kind"],  # kind: timeout, error
)
