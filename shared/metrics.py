"""
Shared metrics configuration for the Business Rule Engine.
"""

from typing import Dict, Any, Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, Info, generate_latest


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        # Private registry per collector; /metrics renders only this one.
        self.registry = registry or CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_rule_engine_metrics()

    def _setup_rule_engine_metrics(self):
        """Set up rule-engine specific metrics."""
        self._metrics["change_events_total"] = Counter(
            "change_events_total",
            "Total change events received",
            ["operation"],
            registry=self.registry
        )

        self._metrics["rule_firings_total"] = Counter(
            "rule_firings_total",
            "Total rule firings by terminal state",
            ["state"],
            registry=self.registry
        )

        self._metrics["rule_firing_duration_seconds"] = Histogram(
            "rule_firing_duration_seconds",
            "Action dispatch duration per firing in seconds",
            registry=self.registry
        )

        self._metrics["rule_actions_total"] = Counter(
            "rule_actions_total",
            "Total actions executed",
            ["action_type", "status"],
            registry=self.registry
        )

    def export(self) -> bytes:
        """Render the registry in Prometheus text format."""
        return generate_latest(self.registry)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_change_event(self, operation: str):
        self._metrics["change_events_total"].labels(operation=operation).inc()

    def record_firing(self, state: str, duration_ms: float):
        """Record one rule firing."""
        self._metrics["rule_firings_total"].labels(state=state).inc()
        self._metrics["rule_firing_duration_seconds"].observe(duration_ms / 1000.0)

    def record_action(self, action_type: str, success: bool):
        self._metrics["rule_actions_total"].labels(
            action_type=action_type,
            status="success" if success else "failure"
        ).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
