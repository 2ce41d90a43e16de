"""
Prometheus metrics exposed on /metrics
"""
from prometheus_client import Counter, Histogram

categorization_decisions = Counter(
    "tallybook_categorization_decisions_total",
    "Categorization results by winning strategy",
    ["method"],
)

ai_provider_calls = Counter(
    "tallybook_ai_provider_calls_total",
    "AI provider calls by outcome",
    ["provider", "outcome"],
)

batch_items_processed = Counter(
    "tallybook_batch_items_processed_total",
    "Batch items reaching a terminal state",
    ["status"],
)

batch_item_duration = Histogram(
    "tallybook_batch_item_duration_seconds",
    "Wall time spent processing one batch item",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300),
)
