"""Prometheus metrics for the application"""
from prometheus_client import Counter, Histogram, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'subsync_webhook_events_total',
        'Total number of webhook events handled, by event kind and outcome',
        ['kind', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('subsync_webhook_events_total')

try:
    webhook_rejections_counter = Counter(
        'subsync_webhook_rejections_total',
        'Total number of rejected webhook requests',
        ['category', 'reason']
    )
except ValueError:
    webhook_rejections_counter = REGISTRY._names_to_collectors.get('subsync_webhook_rejections_total')

try:
    webhook_processing_seconds = Histogram(
        'subsync_webhook_processing_seconds',
        'Time spent processing a webhook request',
        buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)
    )
except ValueError:
    webhook_processing_seconds = REGISTRY._names_to_collectors.get('subsync_webhook_processing_seconds')

# Provider metrics
try:
    provider_lookup_failures_counter = Counter(
        'subsync_provider_lookup_failures_total',
        'Total number of failed payment provider lookups',
        ['reason']
    )
except ValueError:
    provider_lookup_failures_counter = REGISTRY._names_to_collectors.get('subsync_provider_lookup_failures_total')
