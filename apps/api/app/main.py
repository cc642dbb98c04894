from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.events import InternalEvent, event_bus
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.pipeline.api import pipeline_error_handler
from app.pipeline.errors import PipelineError
from app.pipeline.state_machine import get_policy


configure_logging()
logger = logging.getLogger("app.lifecycle")
_subscriptions_registered = False

_pipeline_event_types = [
    "pipeline.lead.created",
    "pipeline.lead.reviewed",
    "pipeline.lead.assigned",
    "pipeline.lead.status_changed",
    "pipeline.quotation.created",
    "pipeline.quotation.sent",
    "pipeline.quotation.decided",
    "pipeline.order.created",
    "pipeline.order.po_received",
    "pipeline.order.status_changed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_pipeline_event(event: InternalEvent) -> None:
    payload = event.payload if isinstance(event.payload, dict) else {}
    logger.info(
        "pipeline_event",
        extra={
            "event_name": event.name,
            "entity_type": payload.get("entity_type"),
            "entity_id": payload.get("entity_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    settings = get_settings()
    # Fail at startup rather than on the first request for a misconfigured policy.
    policy = get_policy(settings.pipeline_policy)
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _pipeline_event_types:
            event_bus.subscribe(event_name, _on_pipeline_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api", "pipeline_policy": policy.name})
    yield


app = FastAPI(title="Sales Pipeline API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_exception_handler(PipelineError, pipeline_error_handler)
app.include_router(api_router)
