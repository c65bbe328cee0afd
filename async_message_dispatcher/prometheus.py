"""Prometheus metrics exposed by the message dispatcher."""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class DispatchMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("smd_sent_total", "Total delivered messages", registry=self.registry)
        self.failed = Counter("smd_failed_total", "Total failed deliveries", registry=self.registry)
        self.persist_errors = Counter(
            "smd_persist_errors_total",
            "Deliveries whose outcome could not be stored",
            registry=self.registry,
        )
        self.cache_errors = Counter("smd_cache_errors_total", "Failed metadata cache writes", registry=self.registry)
        self.cycles = Counter("smd_cycles_total", "Completed dispatch cycles", registry=self.registry)
        self.cycle_errors = Counter("smd_cycle_errors_total", "Aborted dispatch cycles", registry=self.registry)
        self.pending = Gauge("smd_pending_messages", "Current pending messages", registry=self.registry)
        self.running = Gauge("smd_dispatcher_running", "1 while the dispatch loop is running", registry=self.registry)

    def inc_sent(self):
        self.sent.inc()

    def inc_failed(self):
        self.failed.inc()

    def inc_persist_error(self):
        self.persist_errors.inc()

    def inc_cache_error(self):
        self.cache_errors.inc()

    def inc_cycle(self):
        self.cycles.inc()

    def inc_cycle_error(self):
        self.cycle_errors.inc()

    def set_pending(self, value: int):
        """Update the gauge tracking pending messages."""
        self.pending.set(value)

    def set_running(self, running: bool):
        self.running.set(1 if running else 0)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
