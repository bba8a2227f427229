"""Prometheus metrics for the engagement statistics service."""

from prometheus_client import Counter, Histogram

EVENTS_RECORDED = Counter(
    'engagement_events_recorded_total', 'Total engagement events applied', ['metric']
)
LATE_WRITES = Counter('engagement_late_writes_total', 'Events applied to closed buckets')
COUNTER_UNDERFLOWS = Counter('engagement_counter_underflows_total', 'Decrements clamped at zero')
PROPAGATION_RETRIES = Counter('engagement_propagation_retries_total', 'Rollup propagation retries')
ROLLUP_REPAIRS = Counter('engagement_rollup_repairs_total', 'Coarser buckets recomputed from children')
QUERY_TIME = Histogram('engagement_query_seconds', 'Time spent assembling stats responses')
