"""Prometheus metrics definitions and helpers"""
import logging
import time
from contextlib import contextmanager
from talentika_progression.config import ENABLE_PROMETHEUS

logger = logging.getLogger(__name__)


class PrometheusMetrics:
    """Container for all Prometheus metrics"""

    def __init__(self, enabled: bool = ENABLE_PROMETHEUS):
        if not enabled:
            logger.info("Prometheus metrics disabled")
            self._enabled = False
            return

        try:
            from prometheus_client import Counter, Histogram

            # HTTP Request Metrics
            self.http_requests_total = Counter(
                'http_requests_total',
                'Total HTTP requests',
                ['method', 'endpoint', 'status']
            )

            self.http_request_duration_seconds = Histogram(
                'http_request_duration_seconds',
                'HTTP request latency',
                ['method', 'endpoint'],
                buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.0, 5.0, 10.0]
            )

            # Database Metrics
            self.db_queries_total = Counter(
                'db_queries_total',
                'Total database queries',
                ['query_type', 'table']
            )

            self.db_query_duration_seconds = Histogram(
                'db_query_duration_seconds',
                'Database query latency',
                ['query_type'],
                buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0]
            )

            # Engine Metrics
            self.engine_operations_total = Counter(
                'progression_operations_total',
                'Engine commands by outcome',
                ['operation', 'outcome']
            )

            self.engine_operation_duration_seconds = Histogram(
                'progression_operation_duration_seconds',
                'Engine command latency including conflict retries',
                ['operation'],
                buckets=[0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0]
            )

            self.version_conflicts_total = Counter(
                'progression_version_conflicts_total',
                'Optimistic concurrency collisions',
                ['operation']
            )

            self.xp_awarded_total = Counter(
                'progression_xp_awarded_total',
                'XP credited to users'
            )

            self.xp_spent_total = Counter(
                'progression_xp_spent_total',
                'XP debited by reward purchases'
            )

            self.level_ups_total = Counter(
                'progression_level_ups_total',
                'Level-up events'
            )

            self._enabled = True
            logger.info("Prometheus metrics initialized")

        except ImportError:
            logger.error("prometheus-client not installed. Install with: pip install prometheus-client")
            self._enabled = False
        except Exception as e:
            logger.error(f"Failed to initialize Prometheus metrics: {e}", exc_info=True)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Check if metrics are enabled"""
        return self._enabled


# Global metrics instance
metrics = PrometheusMetrics()


def record_http_response(method: str, endpoint: str, status_code: int, duration: float) -> None:
    """Record a completed HTTP response"""
    if not metrics.enabled:
        return

    metrics.http_request_duration_seconds.labels(method=method, endpoint=endpoint).observe(duration)
    metrics.http_requests_total.labels(method=method, endpoint=endpoint, status=status_code).inc()


@contextmanager
def track_database_query(query_type: str, table: str = ""):
    """Track database query metrics"""
    if not metrics.enabled:
        yield
        return

    start_time = time.time()

    try:
        yield
    finally:
        duration = time.time() - start_time
        metrics.db_query_duration_seconds.labels(
            query_type=query_type
        ).observe(duration)

        metrics.db_queries_total.labels(
            query_type=query_type,
            table=table
        ).inc()


@contextmanager
def track_operation(operation: str):
    """Track an engine command: latency plus outcome (ok or error class name)"""
    if not metrics.enabled:
        yield
        return

    start_time = time.time()
    outcome = "ok"

    try:
        yield
    except Exception as e:
        outcome = type(e).__name__
        raise
    finally:
        metrics.engine_operation_duration_seconds.labels(operation=operation).observe(
            time.time() - start_time
        )
        metrics.engine_operations_total.labels(operation=operation, outcome=outcome).inc()


def record_conflict(operation: str) -> None:
    """Record an optimistic concurrency collision"""
    if not metrics.enabled:
        return
    metrics.version_conflicts_total.labels(operation=operation).inc()


def record_xp_awarded(amount: int, leveled_up: bool) -> None:
    """Record credited XP"""
    if not metrics.enabled:
        return
    metrics.xp_awarded_total.inc(amount)
    if leveled_up:
        metrics.level_ups_total.inc()


def record_xp_spent(amount: int) -> None:
    """Record XP debited by a purchase"""
    if not metrics.enabled:
        return
    metrics.xp_spent_total.inc(amount)
