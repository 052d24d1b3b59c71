"""
Factory Monitor - machine telemetry ingestion and health statistics service.

Features:
- Idempotent batch ingestion with last-write-wins conflict resolution
- Windowed defect statistics and line rankings
- Structured logging with correlation IDs
- Prometheus metrics
- Health checks (liveness and readiness)
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from . import __version__
from .config import get_settings
from .logging import setup_logging, get_logger
from .api.router import router
from .middleware.correlation import CorrelationIdMiddleware
from .middleware.error_handler import ErrorHandlerMiddleware
from .middleware.metrics import MetricsMiddleware
from .middleware.validation import ValidationMiddleware
from .metrics import Metrics
from .health import HealthChecker
from .services.event_store import store, set_metrics

SERVICE_NAME = "factory-monitor"

settings = get_settings()

setup_logging(json_output=settings.LOG_JSON)
logger = get_logger()

metrics = Metrics(service_name=SERVICE_NAME, version=__version__)
set_metrics(metrics)

health_checker = HealthChecker(store, service_name=SERVICE_NAME, version=__version__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "service_starting",
        version=__version__,
        env=settings.ENV,
        store=settings.STORE_ADAPTER,
        redis_configured=bool(settings.REDIS_URL),
    )
    yield
    logger.info("service_stopping")
    metrics.app_up.labels(service=SERVICE_NAME, version=__version__).set(0)
    close = getattr(store, "close", None)
    if close is not None:
        await close()


app = FastAPI(
    title="Factory Monitor",
    version=__version__,
    description="Machine event ingestion with idempotent batching and defect statistics",
    lifespan=lifespan,
)

# Last added runs first: correlation ID wraps everything else
app.add_middleware(ValidationMiddleware)
app.add_middleware(ErrorHandlerMiddleware)
app.add_middleware(MetricsMiddleware, metrics=metrics)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(router)

metrics_app = make_asgi_app(registry=metrics.registry)
app.mount("/metrics", metrics_app)


@app.get("/health")
async def health():
    """
    Liveness probe - basic health check.

    Returns 200 if service is running.
    """
    logger.debug("health_check_liveness")
    return health_checker.liveness()


@app.get("/health/ready")
async def health_ready():
    """
    Readiness probe - comprehensive health check.

    Returns:
        200: Service is ready to handle traffic
        503: Service is not ready
    """
    logger.debug("health_check_readiness")
    metrics.update_system_metrics()
    result = await health_checker.readiness()
    status_code = 200 if result["status"] == "ready" else 503
    return JSONResponse(result, status_code=status_code)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "factory_monitor.main:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
        reload=settings.ENV == "dev",
    )
