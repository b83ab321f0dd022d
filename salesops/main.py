from contextlib import asynccontextmanager
import logging

import uvicorn
from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from salesops.api.routes import router as api_router
from salesops.core.config import get_settings
from salesops.core.context import RequestContextMiddleware
from salesops.core.events import InternalEvent, event_bus
from salesops.logging import configure_logging
from salesops.middleware.correlation_id import CorrelationIdMiddleware
from salesops.middleware.rate_limit import SalesMutationRateLimitMiddleware
from salesops.middleware.request_logging import RequestLoggingMiddleware
from salesops.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("salesops.lifecycle")
_subscriptions_registered = False

_sales_event_types = [
    "sales.appointment.created",
    "sales.appointment.stage_changed",
    "sales.appointment.reverted",
    "sales.deal.closed",
    "sales.mrr.payment_confirmed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name, "event_payload": event.payload})


def _on_sales_domain_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    logger.debug(
        "sales_event",
        extra={
            "event_name": event.name,
            "team_id": payload.get("team_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _sales_event_types:
            event_bus.subscribe(event_name, _on_sales_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title=get_settings().app_name, version=get_settings().app_version, lifespan=lifespan)
app.add_middleware(SalesMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

setup_otel()

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "salesops.main:app",
        host="0.0.0.0",
        port=settings.api_port,
        reload=settings.app_env == "local" and settings.app_debug,
        log_config=None,
    )
