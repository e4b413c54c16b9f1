"""
Prometheus Metrics Module
- Promotion outcomes per target
- Retry / approval / rollout tracking
"""

from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ..core.logging import get_logger

logger = get_logger(__name__)


class MetricsCollector:
    """Prometheus metrics for promotions"""

    def __init__(
        self,
        app_name: str = "release_promoter",
        registry: Optional[CollectorRegistry] = None,
    ):
        self.app_name = app_name
        self.registry = registry or CollectorRegistry()

        self.promotions_total = Counter(
            f"{app_name}_promotions_total",
            "Promotions by target and final state",
            ["target", "state"],
            registry=self.registry,
        )

        self.promotion_duration = Histogram(
            f"{app_name}_promotion_duration_seconds",
            "Wall time of one promotion (approval wait excluded)",
            ["target"],
            buckets=[1, 5, 10, 30, 60, 120, 300, 600],
            registry=self.registry,
        )

        self.retries_total = Counter(
            f"{app_name}_retries_total",
            "Retried backend calls",
            ["target", "operation"],
            registry=self.registry,
        )

        self.approval_wait = Histogram(
            f"{app_name}_approval_wait_seconds",
            "Time spent waiting for manual approval",
            ["target"],
            buckets=[1, 10, 60, 300, 900, 3600],
            registry=self.registry,
        )

        self.rollout_polls_total = Counter(
            f"{app_name}_rollout_polls_total",
            "Rollout status polls",
            ["deployment"],
            registry=self.registry,
        )

        self.pending_approvals = Gauge(
            f"{app_name}_pending_approvals",
            "Deploys currently waiting for approval",
            registry=self.registry,
        )

    def record_promotion(self, target: str, state: str, duration_seconds: float) -> None:
        self.promotions_total.labels(target=target, state=state).inc()
        self.promotion_duration.labels(target=target).observe(duration_seconds)

    def record_retry(self, target: str, operation: str) -> None:
        self.retries_total.labels(target=target, operation=operation).inc()

    def record_approval_wait(self, target: str, seconds: float) -> None:
        self.approval_wait.labels(target=target).observe(seconds)

    def record_rollout_poll(self, deployment: str) -> None:
        self.rollout_polls_total.labels(deployment=deployment).inc()

    def get_metrics(self) -> bytes:
        """Prometheus exposition format"""
        return generate_latest(self.registry)

    def get_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


_metrics_collector: Optional[MetricsCollector] = None


def get_metrics_collector(app_name: str = "release_promoter") -> MetricsCollector:
    """Process wide collector"""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = MetricsCollector(app_name)
    return _metrics_collector
