"""Prometheus metrics for the billing service"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Re-importing the module (tests, reloads) must not register twice
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


webhooks_counter = _counter(
    'billing_webhooks_total',
    'Total number of payment gateway notifications received',
    ['type', 'outcome']
)

subscription_transitions_counter = _counter(
    'billing_subscription_transitions_total',
    'Total number of subscription status transitions',
    ['from_status', 'to_status', 'source']
)

checkouts_counter = _counter(
    'billing_checkouts_total',
    'Total number of checkout attempts',
    ['outcome']
)

gateway_requests_counter = _counter(
    'billing_gateway_requests_total',
    'Total number of payment gateway API requests',
    ['operation', 'outcome']
)

maintenance_runs_counter = _counter(
    'billing_maintenance_runs_total',
    'Total number of billing maintenance runs',
    ['status']
)
