"""Prometheus metrics collection for MCP AppHost."""

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class MetricsCollector:
    """Collects and exposes Prometheus metrics for container lifecycle and preview traffic."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize metrics collector with all metrics.

        Args:
            registry: Registry to register metrics on. A private registry is
                created when omitted so several collectors can coexist.
        """
        self.registry = registry or CollectorRegistry()

        # Counter metrics
        self.container_starts_total = Counter(
            "apphost_container_starts_total",
            "Total number of container start attempts",
            ["engine", "result"],
            registry=self.registry,
        )

        self.container_reaps_total = Counter(
            "apphost_container_reaps_total",
            "Total number of idle containers reaped",
            registry=self.registry,
        )

        self.proxy_requests_total = Counter(
            "apphost_proxy_requests_total",
            "Total number of preview proxy requests",
            ["status"],
            registry=self.registry,
        )

        # Histogram metrics
        self.proxy_upstream_seconds = Histogram(
            "apphost_proxy_upstream_seconds",
            "Time spent waiting for the upstream dev server",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        # Gauge metrics
        self.allocated_ports = Gauge(
            "apphost_allocated_ports",
            "Number of host ports currently allocated",
            registry=self.registry,
        )

        self.starting_containers = Gauge(
            "apphost_starting_containers",
            "Number of containers currently starting",
            registry=self.registry,
        )

    def record_container_start(self, engine: str, success: bool) -> None:
        """
        Record a container start attempt.

        Args:
            engine: Engine type that ran the container
            success: Whether the container survived its settle check
        """
        result = "success" if success else "failure"
        self.container_starts_total.labels(engine=engine, result=result).inc()

    def record_reap(self) -> None:
        """Record an idle container being reaped."""
        self.container_reaps_total.inc()

    def record_proxy_request(self, status: int) -> None:
        """
        Record a proxied preview request.

        Args:
            status: HTTP status returned to the client
        """
        self.proxy_requests_total.labels(status=str(status)).inc()

    def record_upstream_duration(self, duration_seconds: float) -> None:
        """
        Record upstream response time.

        Args:
            duration_seconds: Duration in seconds
        """
        self.proxy_upstream_seconds.observe(duration_seconds)

    def set_allocated_ports(self, count: int) -> None:
        """Set the number of allocated ports."""
        self.allocated_ports.set(count)

    def set_starting_containers(self, count: int) -> None:
        """Set the number of containers mid-start."""
        self.starting_containers.set(count)

    def get_metrics(self) -> bytes:
        """
        Get current metrics in Prometheus format.

        Returns:
            Metrics data in bytes
        """
        return generate_latest(self.registry)
