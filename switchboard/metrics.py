"""Prometheus metrics."""

from prometheus_client import Counter, Histogram

api_requests_total = Counter('api_requests_total', 'Total API requests', ['method', 'endpoint', 'status'])
api_request_duration = Histogram('api_request_duration_seconds', 'API request duration')

rings_started = Counter('rings_started_total', 'Inbound calls offered to at least one agent')
calls_missed = Counter('calls_missed_total', 'Calls that stopped ringing without an owner', ['reason'])
claims = Counter('claims_total', 'Claim attempts', ['outcome'])
calls_parked = Counter('calls_parked_total', 'Calls moved into the parking lot')
unparks = Counter('unparks_total', 'Unpark attempts', ['outcome'])
parked_abandoned = Counter('parked_calls_abandoned_total', 'Parked calls removed without retrieval', ['reason'])
provider_callbacks_ignored = Counter(
    'provider_callbacks_ignored_total',
    'Provider callbacks that matched no record',
    ['callback'],
)
