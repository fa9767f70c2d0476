"""
Prometheus metrics configuration for the TradeLink API
"""
import time

from prometheus_client import Counter, Histogram, Info
from fastapi import FastAPI, Request
import structlog

from tradelink.core.config import settings

logger = structlog.get_logger()

# Metrics definitions
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"]
)

broker_api_requests_total = Counter(
    "broker_api_requests_total",
    "Total broker API requests",
    ["broker", "endpoint", "status"]
)

token_exchanges_total = Counter(
    "token_exchanges_total",
    "Authorization code exchanges by outcome",
    ["broker", "outcome"]
)

token_validations_total = Counter(
    "token_validations_total",
    "Broker access token validations by outcome",
    ["broker", "outcome"]
)

auth_events_total = Counter(
    "auth_events_total",
    "Registration and login attempts by outcome",
    ["event", "outcome"]
)

app_info = Info(
    "app_info",
    "Application information"
)


def setup_metrics(app: FastAPI):
    """Setup application metrics"""

    app_info.info({
        "version": settings.VERSION,
        "environment": settings.ENVIRONMENT,
    })

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Middleware to collect HTTP metrics"""

        start_time = time.time()
        response = await call_next(request)
        duration = time.time() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code)
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        return response

    logger.info("Metrics setup completed")


def record_broker_api_request(broker: str, endpoint: str, status: str):
    """Record broker API request metric"""
    broker_api_requests_total.labels(
        broker=broker,
        endpoint=endpoint,
        status=status
    ).inc()


def record_token_exchange(broker: str, outcome: str):
    token_exchanges_total.labels(broker=broker, outcome=outcome).inc()


def record_token_validation(broker: str, outcome: str):
    token_validations_total.labels(broker=broker, outcome=outcome).inc()


def record_auth_event(event: str, outcome: str):
    auth_events_total.labels(event=event, outcome=outcome).inc()
