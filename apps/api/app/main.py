from contextlib import asynccontextmanager, contextmanager
import logging
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app.api.routes import router as api_router
from app.automations.service import automation_dispatcher
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import SessionLocal, get_db
from app.core.events import InternalEvent, event_bus
from app.leads.service import FORM_SUBMITTED_EVENT
from app.logging import configure_logging
from app.middleware.correlation_id import CorrelationIdMiddleware
from app.middleware.rate_limit import PublicIntakeRateLimitMiddleware
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("app.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _automation_session_scope():
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        try:
            next(generator)
        except StopIteration:
            pass


def _on_form_submitted(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    if not get_settings().auto_run_automations:
        return
    envelope: dict[str, Any] = event.payload
    payload = envelope.get("payload") if isinstance(envelope.get("payload"), dict) else {}
    try:
        with _automation_session_scope() as session:
            automation_dispatcher.dispatch_form_submission(session, envelope)
    except Exception as exc:
        logger.exception(
            "automation.dispatch.failed",
            extra={"event_name": event.name, "lead_id": payload.get("lead_id"), "error": str(exc)[:500]},
        )


def register_event_handlers() -> None:
    event_bus.subscribe("system.started", _on_system_started)
    event_bus.subscribe(FORM_SUBMITTED_EVENT, _on_form_submitted)


@asynccontextmanager
async def lifespan(app: FastAPI):
    register_event_handlers()
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(PublicIntakeRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["x-correlation-id"],
)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
