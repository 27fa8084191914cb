"""
metrics.py - Router metrics for monitoring
"""
from prometheus_client import Counter, Gauge, generate_latest

routing_decisions = Counter(
    'canary_routing_decisions_total',
    'Routing decisions by chosen version and reason',
    ['version', 'reason']
)

assignments_created = Counter(
    'canary_assignments_total',
    'Sticky assignments written to the assignment store',
    ['version']
)

store_errors = Counter(
    'canary_store_errors_total',
    'Assignment store failures degraded to a cache miss',
    ['operation']
)

rollout_percentage = Gauge(
    'canary_rollout_percentage',
    'Current candidate traffic percentage'
)

rollout_transitions = Counter(
    'canary_rollout_transitions_total',
    'Rollout state transitions',
    ['status']
)

rollback_evictions = Counter(
    'canary_rollback_evictions_total',
    'Sticky assignments purged by rollback sweeps'
)

circuit_breaker_state = Gauge(
    'canary_store_circuit_state',
    'Circuit breaker state (0=closed, 1=open, 2=half-open)',
    ['service']
)


def get_metrics():
    """Get Prometheus metrics"""
    return generate_latest()
