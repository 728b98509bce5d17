from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from parcelnotify.apps.api.errors import (
    http_exception_handler,
    sms_action_exception_handler,
    sms_config_exception_handler,
    sms_not_found_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from parcelnotify.apps.api.routes.health import router as health_router
from parcelnotify.apps.api.routes.sms_admin import router as sms_admin_router
from parcelnotify.apps.api.routes.sms_webhook import router as sms_webhook_router
from parcelnotify.core.config import get_settings
from parcelnotify.core.errors import SmsActionError, SmsConfigError, SmsRecordNotFoundError
from parcelnotify.core.logging import configure_logging
from parcelnotify.services.scheduler import SmsScheduler


logger = logging.getLogger(__name__)


def create_app(*, scheduler: SmsScheduler | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # The scheduler runs in-process only when enabled; otherwise a separate worker owns it.
        started = None
        if settings.sms_scheduler_enabled:
            started = app.state.scheduler or SmsScheduler()
            app.state.scheduler = started
            started.start()
        try:
            yield
        finally:
            if started is not None:
                await started.stop()

    app = FastAPI(title="parcelnotify API", lifespan=lifespan)
    app.state.scheduler = scheduler

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(SmsActionError, sms_action_exception_handler)
    app.add_exception_handler(SmsRecordNotFoundError, sms_not_found_exception_handler)
    app.add_exception_handler(SmsConfigError, sms_config_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router)
    app.include_router(sms_webhook_router)
    app.include_router(sms_admin_router)
    return app


app = create_app()
