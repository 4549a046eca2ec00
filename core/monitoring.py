"""Prometheus metrics for the execution layer."""
import logging

import prometheus_client as prom
from prometheus_client import start_http_server

logger = logging.getLogger(__name__)

CACHE_EVENTS = prom.Counter(
    'llmgate_cache_events_total', 'Cache hits, misses and evictions', ['cache', 'event']
)
RETRY_ATTEMPTS = prom.Counter(
    'llmgate_retry_attempts_total', 'Retries scheduled after a failed attempt', ['operation']
)
CIRCUIT_TRANSITIONS = prom.Counter(
    'llmgate_circuit_transitions_total', 'Circuit breaker state transitions', ['circuit', 'state']
)
RATE_LIMIT_WAITS = prom.Counter(
    'llmgate_rate_limit_waits_total', 'Admissions that had to wait for a free slot', ['limiter']
)
TOKENS = prom.Counter(
    'llmgate_tokens_total', 'Tokens consumed', ['provider', 'direction']
)
COST_USD = prom.Counter(
    'llmgate_cost_usd_total', 'Accumulated request cost in USD', ['provider', 'model']
)
REQUESTS = prom.Counter(
    'llmgate_requests_total', 'Executed requests by outcome', ['provider', 'outcome']
)
REQUEST_LATENCY = prom.Histogram(
    'llmgate_request_latency_seconds', 'End-to-end request latency', ['provider']
)


def start_metrics_server(port: int = 9090) -> None:
    """Starts the Prometheus exporter."""
    # Bind to 127.0.0.1 to ensure the port is not exposed externally.
    start_http_server(port, addr='127.0.0.1')
    logger.info(f"Metrics exporter listening on 127.0.0.1:{port}")
