"""
Rekey Metrics.

Prometheus metrics for rotation outcomes and latency, plus a small in-memory
counter view for health checks and tests.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

logger = logging.getLogger(__name__)


class RotationMetrics:
    """
    Metrics collector for rotation actions.

    Example:
        >>> metrics = RotationMetrics()
        >>> metrics.record_outcome("complete", "ok")
        >>> with metrics.timer("complete"):
        ...     await service.complete(...)
        >>> metrics.get_stats()
        {'complete:ok': 1}
    """

    def __init__(self, namespace: str = "rekey", registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collector.

        Args:
            namespace: Metric name prefix.
            registry: Prometheus registry (a private one is created if None).
        """
        self._namespace = namespace
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {}
        self._registry = registry or CollectorRegistry()

        self._outcomes = Counter(
            f"{namespace}_rotation_requests_total",
            "Rotation requests by action and outcome code",
            ["action", "outcome"],
            registry=self._registry,
        )
        self._duration = Histogram(
            f"{namespace}_rotation_duration_seconds",
            "Rotation request latency in seconds",
            ["action"],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_outcome(self, action: str, outcome: str) -> None:
        """Record one request; ``outcome`` is ``ok`` or an error code."""
        with self._lock:
            key = f"{action}:{outcome}"
            self._counters[key] = self._counters.get(key, 0) + 1
        self._outcomes.labels(action=action, outcome=outcome).inc()

    @contextmanager
    def timer(self, action: str):
        """Context manager for timing one request."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self._duration.labels(action=action).observe(time.perf_counter() - start)

    def get_stats(self) -> Dict[str, Any]:
        """Get outcome counters as a dictionary."""
        with self._lock:
            return dict(self._counters)

    def get_prometheus_metrics(self) -> bytes:
        """Get metrics in Prometheus text format."""
        return generate_latest(self._registry)
