"""Prometheus metrics exposed by the delivery workers."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DeliveryMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("adq_sent_total", "Total delivered jobs", ["provider"], registry=self.registry)
        self.transient_failures = Counter(
            "adq_transient_failures_total", "Attempts that failed and were rescheduled", registry=self.registry
        )
        self.permanent_failures = Counter(
            "adq_permanent_failures_total", "Jobs moved to permanent_failure", registry=self.registry
        )
        self.leases = Counter("adq_leases_total", "Leases acquired", registry=self.registry)
        self.lease_races = Counter(
            "adq_lease_races_lost_total", "Conditional lease updates lost to another worker", registry=self.registry
        )
        self.reclaimed = Counter(
            "adq_reclaimed_total", "Abandoned leases returned to the queue", registry=self.registry
        )
        self.sync_failures = Counter(
            "adq_sync_failures_total", "Status synchronisations that failed", registry=self.registry
        )
        self.queued = Gauge("adq_queued_jobs", "Jobs currently queued", registry=self.registry)

    def inc_sent(self, provider: str | None):
        self.sent.labels(provider=provider or "unknown").inc()

    def inc_transient_failure(self):
        self.transient_failures.inc()

    def inc_permanent_failure(self):
        self.permanent_failures.inc()

    def inc_leased(self, count: int = 1):
        if count:
            self.leases.inc(count)

    def inc_lease_race_lost(self):
        self.lease_races.inc()

    def inc_reclaimed(self, count: int):
        """Increase the reclaim counter by ``count`` (ignored when zero)."""
        if count:
            self.reclaimed.inc(count)

    def inc_sync_failure(self):
        self.sync_failures.inc()

    def set_queued(self, value: int):
        """Update the gauge tracking queued jobs."""
        self.queued.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
