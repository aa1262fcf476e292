import logging
from typing import Optional

import prometheus_client as prom
from prometheus_client import CollectorRegistry, generate_latest, start_http_server

logger = logging.getLogger(__name__)


class GatewayMetrics:
    """Prometheus metrics for the completion gateway.

    Each instance owns its own CollectorRegistry so several gateways (or test
    cases) can coexist in one process without duplicate-registration errors.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.metrics = {
            'requests': prom.Counter(
                'ai_requests_total', 'Completed gateway requests',
                ['mode', 'outcome'], registry=self.registry,
            ),
            'provider_attempts': prom.Counter(
                'ai_provider_attempts_total', 'Calls made to upstream providers',
                ['provider', 'outcome'], registry=self.registry,
            ),
            'cache': prom.Counter(
                'ai_cache_lookups_total', 'Response cache lookups',
                ['result'], registry=self.registry,
            ),
            'fallbacks': prom.Counter(
                'ai_fallbacks_total', 'Switches to a fallback model',
                registry=self.registry,
            ),
            'latency': prom.Histogram(
                'ai_request_latency_seconds', 'End-to-end request latency',
                ['mode'], registry=self.registry,
            ),
        }

    def start(self, port: int = 9090):
        """Starts a standalone metrics endpoint."""
        # Bind to 127.0.0.1 to ensure the port is not exposed externally.
        start_http_server(port, addr='127.0.0.1', registry=self.registry)
        logger.info("Metrics endpoint started on port %d (localhost)", port)

    def record_request(self, mode: str, outcome: str, latency_s: float):
        self.metrics['requests'].labels(mode=mode, outcome=outcome).inc()
        self.metrics['latency'].labels(mode=mode).observe(latency_s)

    def record_attempt(self, provider: str, outcome: str):
        self.metrics['provider_attempts'].labels(provider=provider, outcome=outcome).inc()

    def record_cache(self, hit: bool):
        self.metrics['cache'].labels(result='hit' if hit else 'miss').inc()

    def record_fallback(self):
        self.metrics['fallbacks'].inc()

    def render(self) -> bytes:
        """Returns the metrics in the Prometheus text exposition format."""
        return generate_latest(self.registry)
