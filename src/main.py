"""Entry point for the AI phone-call bridge service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from api.dependencies import get_call_controller
from api.mcp_routes import router as mcp_router
from api.routes import router as api_router
from api.twilio_routes import router as twilio_router
from calls.errors import CallServiceError
from config.settings import get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Auto-cancel timers must not outlive the event loop.
    controller_factory = app.dependency_overrides.get(get_call_controller, get_call_controller)
    await controller_factory().shutdown()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

app = FastAPI(
    title="AI Call Bridge",
    description="Places outbound calls and bridges Twilio media streams to a realtime speech model.",
    lifespan=lifespan,
)
app.include_router(api_router, prefix="/api")
app.include_router(twilio_router, prefix="/api")
app.include_router(mcp_router)


@app.exception_handler(CallServiceError)
async def call_service_error_handler(request: Request, exc: CallServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
