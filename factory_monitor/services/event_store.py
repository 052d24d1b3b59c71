"""Event store selection and the process-wide engine instances."""
import structlog
from ..adapters.base import EventStore
from ..adapters.memory import InMemoryEventStore
from ..adapters.redis_store import RedisEventStore
from ..config import get_settings
from .ingestion import IngestionEngine
from .aggregation import AggregationEngine

log = structlog.get_logger()
settings = get_settings()


def create_default_store() -> EventStore:
    """
    Create the event store based on configuration.

    Returns:
        EventStore instance based on the STORE_ADAPTER setting
    """
    if settings.STORE_ADAPTER == "redis":
        if not settings.REDIS_URL:
            log.warning(
                "store.fallback",
                requested="redis",
                actual="memory",
                reason="REDIS_URL not configured"
            )
            return InMemoryEventStore()

        log.info("store.selected", type="redis", url=str(settings.REDIS_URL))
        return RedisEventStore()
    else:
        log.info("store.selected", type="memory")
        return InMemoryEventStore()


# Global instances; main.py attaches metrics at startup
store = create_default_store()
ingestion_engine = IngestionEngine(store)
aggregation_engine = AggregationEngine(store)


def set_metrics(metrics):
    """Attach the Prometheus metrics to the global engines."""
    ingestion_engine.metrics = metrics
    aggregation_engine.metrics = metrics
