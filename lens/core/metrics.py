"""
Prometheus Metrics Export for Lens

Exports engine metrics for monitoring:
- Upstream fetch attempts, failures and latency per source
- Result cache hits/misses per entry kind
- Records dropped by the ingestion/normalizer/census stages
- End-to-end analysis duration
"""

import logging
import os
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server

logger = logging.getLogger(__name__)


class LensMetrics:
    """
    Prometheus metrics exporter for Lens.

    Each instance owns its CollectorRegistry, so engines built in tests
    never collide on metric names.
    """

    def __init__(self, port: int = 8082, registry: Optional[CollectorRegistry] = None):
        self.port = port
        self.metrics_started = False
        self.registry = registry or CollectorRegistry()

        self.fetch_attempts = Counter(
            'lens_fetch_attempts_total',
            'Upstream fetch attempts',
            ['source'],
            registry=self.registry,
        )

        self.fetch_failures = Counter(
            'lens_fetch_failures_total',
            'Upstream fetches that failed after retries',
            ['source', 'kind'],
            registry=self.registry,
        )

        self.fetch_duration = Histogram(
            'lens_fetch_duration_seconds',
            'Wall time of one upstream fetch including retries',
            ['source'],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30, 60],
            registry=self.registry,
        )

        self.cache_requests = Counter(
            'lens_cache_requests_total',
            'Result cache lookups',
            ['kind', 'result'],
            registry=self.registry,
        )

        self.records_dropped = Counter(
            'lens_records_dropped_total',
            'Upstream records dropped before analysis',
            ['stage', 'reason'],
            registry=self.registry,
        )

        self.analysis_duration = Histogram(
            'lens_analysis_duration_seconds',
            'Time taken to produce an analytics report',
            buckets=[0.5, 1, 5, 10, 30, 60, 120, 300],
            registry=self.registry,
        )

    def start_server(self):
        """Start Prometheus metrics HTTP server."""
        if self.metrics_started:
            return

        try:
            start_http_server(self.port, registry=self.registry)
            self.metrics_started = True
            logger.info(f"Prometheus metrics server started on port {self.port}")
        except OSError as e:
            logger.warning(f"Failed to start Prometheus metrics server: {e}")

    def record_fetch_attempt(self, source: str):
        self.fetch_attempts.labels(source=source).inc()

    def record_fetch_failure(self, source: str, kind: str):
        self.fetch_failures.labels(source=source, kind=kind).inc()

    def record_fetch_duration(self, source: str, duration_seconds: float):
        self.fetch_duration.labels(source=source).observe(duration_seconds)

    def record_cache_lookup(self, kind: str, hit: bool):
        self.cache_requests.labels(kind=kind, result="hit" if hit else "miss").inc()

    def record_drops(self, stage: str, dropped):
        """
        Add per-reason drop counts.

        Args:
            stage: ingestion, normalizer or census
            dropped: Mapping of reason -> count
        """
        for reason, count in dropped.items():
            if count:
                self.records_dropped.labels(stage=stage, reason=reason).inc(count)

    def record_analysis_duration(self, duration_seconds: float):
        self.analysis_duration.observe(duration_seconds)


# Global metrics instance
_metrics_instance: Optional[LensMetrics] = None


def get_metrics() -> LensMetrics:
    """Get or create global metrics instance."""
    global _metrics_instance

    if _metrics_instance is None:
        port = int(os.getenv("LENS_METRICS_PORT", "8082"))
        _metrics_instance = LensMetrics(port=port)

        # Auto-start if enabled
        if os.getenv("LENS_METRICS_ENABLED", "false").lower() == "true":
            _metrics_instance.start_server()

    return _metrics_instance
