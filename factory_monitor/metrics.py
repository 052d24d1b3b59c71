"""
Prometheus metrics for the factory monitor service.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
import psutil
import os


class Metrics:
    """
    Centralized metrics for the factory monitor service.
    """

    def __init__(self, service_name: str = "factory-monitor", version: str = "0.1.0", registry=None):
        self.service_name = service_name
        self.version = version
        self.registry = registry or CollectorRegistry()

        # HTTP Metrics
        self.http_requests_total = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["service", "method", "path", "status"],
            registry=self.registry,
        )

        self.http_request_duration = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["service", "method", "path"],
            registry=self.registry,
        )

        self.http_requests_active = Gauge(
            "http_requests_active",
            "Number of active HTTP requests",
            ["service"],
            registry=self.registry,
        )
        self.http_requests_active.labels(service=service_name).set(0)

        # Application Info
        self.app_info = Info(
            "app",
            "Application information",
            registry=self.registry,
        )
        self.app_info.info({"service": service_name, "version": version})

        self.app_up = Gauge(
            "app_up",
            "Application up status (1=up, 0=down)",
            ["service", "version"],
            registry=self.registry,
        )
        self.app_up.labels(service=service_name, version=version).set(1)

        # Ingestion
        self.events_ingested_total = Counter(
            "factory_events_ingested_total",
            "Ingested events by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self.ingest_batch_size = Histogram(
            "factory_ingest_batch_size",
            "Number of events per ingested batch",
            buckets=(1, 10, 50, 100, 500, 1000, 5000, 10000),
            registry=self.registry,
        )

        self.ingest_duration = Histogram(
            "factory_ingest_duration_seconds",
            "Time spent resolving and persisting one batch",
            registry=self.registry,
        )

        self.store_conflicts_total = Counter(
            "factory_store_conflicts_total",
            "Write races lost to a concurrent batch",
            ["kind"],
            registry=self.registry,
        )

        # Aggregation
        self.queries_total = Counter(
            "factory_queries_total",
            "Aggregation queries served",
            ["query"],
            registry=self.registry,
        )

        # System Metrics
        self._setup_process_metrics()

    def _setup_process_metrics(self):
        """Set up process-level metrics using psutil."""
        self.process_memory_bytes = Gauge(
            "factory_process_resident_memory_bytes",
            "Resident memory size in bytes",
            ["service"],
            registry=self.registry,
        )

        self.process_open_fds = Gauge(
            "factory_process_open_fds",
            "Number of open file descriptors",
            ["service"],
            registry=self.registry,
        )

        self.update_system_metrics()

    def update_system_metrics(self):
        """Update system metrics from psutil."""
        try:
            process = psutil.Process(os.getpid())
            self.process_memory_bytes.labels(service=self.service_name).set(
                process.memory_info().rss
            )
            try:
                self.process_open_fds.labels(service=self.service_name).set(process.num_fds())
            except AttributeError:
                # num_fds() not available on all platforms
                pass
        except psutil.Error:
            pass

    def record_ingest(self, result, batch_size: int, duration_seconds: float):
        """Record the outcome counts of one batch."""
        self.ingest_batch_size.observe(batch_size)
        self.ingest_duration.observe(duration_seconds)
        for outcome in ("accepted", "deduped", "updated", "rejected"):
            count = getattr(result, outcome)
            if count:
                self.events_ingested_total.labels(outcome=outcome).inc(count)

    def record_conflict(self, kind: str, count: int = 1):
        self.store_conflicts_total.labels(kind=kind).inc(count)

    def record_query(self, query: str):
        self.queries_total.labels(query=query).inc()
