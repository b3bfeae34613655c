"""
Prometheus metrics collection.
"""

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from mqueue.constants import (
    METRIC_HANDLER_DURATION,
    METRIC_LEASES_ACQUIRED,
    METRIC_LEASES_EXTENDED,
    METRIC_MESSAGES_ACKED,
    METRIC_MESSAGES_DEAD,
    METRIC_MESSAGES_ENQUEUED,
    METRIC_MESSAGES_PURGED,
    METRIC_QUEUE_DEPTH,
)
from mqueue.types.message import QueueStats


class MetricsCollector:
    """
    Prometheus metrics collector for one queue engine.

    Collects metrics for:
    - Queue depth by channel and state
    - Enqueues, leases, acks, pings
    - Dead-lettered and purged messages
    - Worker handler duration

    Every collector owns a registry unless one is passed in, so several
    engines can live in one process.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """
        Initialize the metrics collector.

        Args:
            registry: Optional registry to register metrics with.
        """
        self.registry = registry or CollectorRegistry()

        self.queue_depth = Gauge(
            METRIC_QUEUE_DEPTH,
            "Number of messages by channel and state",
            ["channel", "state"],
            registry=self.registry,
        )

        self.messages_enqueued = Counter(
            METRIC_MESSAGES_ENQUEUED,
            "Total number of messages enqueued",
            ["channel"],
            registry=self.registry,
        )

        self.leases_acquired = Counter(
            METRIC_LEASES_ACQUIRED,
            "Total number of leases acquired",
            ["channel"],
            registry=self.registry,
        )

        self.messages_acked = Counter(
            METRIC_MESSAGES_ACKED,
            "Total number of messages acknowledged",
            ["channel"],
            registry=self.registry,
        )

        self.leases_extended = Counter(
            METRIC_LEASES_EXTENDED,
            "Total number of lease extensions",
            ["channel"],
            registry=self.registry,
        )

        self.messages_dead = Counter(
            METRIC_MESSAGES_DEAD,
            "Total number of messages moved to the dead state",
            ["channel"],
            registry=self.registry,
        )

        self.messages_purged = Counter(
            METRIC_MESSAGES_PURGED,
            "Total number of finished messages purged by retention",
            registry=self.registry,
        )

        self.handler_duration = Histogram(
            METRIC_HANDLER_DURATION,
            "Worker handler duration in seconds",
            ["channel", "status"],
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
            registry=self.registry,
        )

    def record_enqueued(self, channel: str, count: int = 1) -> None:
        self.messages_enqueued.labels(channel=channel).inc(count)

    def record_lease_acquired(self, channel: str) -> None:
        self.leases_acquired.labels(channel=channel).inc()

    def record_acked(self, channel: str) -> None:
        self.messages_acked.labels(channel=channel).inc()

    def record_lease_extended(self, channel: str) -> None:
        self.leases_extended.labels(channel=channel).inc()

    def record_dead(self, channel: str) -> None:
        self.messages_dead.labels(channel=channel).inc()

    def record_purged(self, count: int) -> None:
        self.messages_purged.inc(count)

    def record_handled(self, channel: str, status: str, duration_seconds: float) -> None:
        """Record a worker handler run."""
        self.handler_duration.labels(channel=channel, status=status).observe(duration_seconds)

    def update_queue_depth(self, stats: QueueStats) -> None:
        """Update the depth gauges of one channel from a stats snapshot."""
        channel = stats.channel or "all"
        self.queue_depth.labels(channel=channel, state="pending").set(stats.size)
        self.queue_depth.labels(channel=channel, state="leased").set(stats.in_flight)
        self.queue_depth.labels(channel=channel, state="completed").set(stats.done)
        self.queue_depth.labels(channel=channel, state="dead").set(stats.dead)

    def get_metrics(self) -> bytes:
        """Get all metrics in Prometheus format."""
        return generate_latest(self.registry)
