# otpcore/main.py
"""
FastAPI application.

Startup (lifespan):
- Build the document store (OTPCORE_STORE) and wire every service
- Start the background retry sweep when RETRY_SWEEP_ENABLED is on

Error Normalization:
- Every error leaves as {"error": {"code", "message", ...}, "persona": "OTPCORE", "request_id"}

Run:
    uvicorn otpcore.main:app
"""

from __future__ import annotations

import os
import uuid
import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from otpcore.core import OtpCore, build_core
from otpcore.db import check_db_health, create_store, is_retry_sweep_enabled
from otpcore.errors import OtpCoreError
from otpcore.security.throttle import limiter
from otpcore.verification.preference_routes import router as preferences_router
from otpcore.verification.routes import router as verification_router

# =========================
# Environment & Constants
# =========================
ALLOWED = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000")
ERROR_PERSONA = "OTPCORE"


def _get_sweep_interval() -> int:
    try:
        return max(int(os.getenv("RETRY_SWEEP_INTERVAL_SECONDS", "300")), 5)
    except ValueError:
        return 300


# =========================
# Logging
# =========================
logger = logging.getLogger("otpcore")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")


# =========================
# Background Retry Sweep
# =========================
async def retry_sweep_loop(core: OtpCore, interval: int) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await core.orchestrator.run_retry_sweep()
        except Exception as e:
            logger.error("Retry sweep failed: %s", str(e)[:100])


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "core", None) is None:
        store = await create_store()
        app.state.core = build_core(store) if store is not None else None
        if store is None:
            logger.error("Store unavailable; API will answer 503")

    core: Optional[OtpCore] = app.state.core
    sweep_task = None
    if core is not None and is_retry_sweep_enabled():
        interval = _get_sweep_interval()
        sweep_task = asyncio.create_task(retry_sweep_loop(core, interval))
        logger.info("Retry sweep started (every %ds)", interval)

    yield

    if sweep_task is not None:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
    if core is not None:
        await core.events.drain()


# =========================
# Error Normalization
# =========================
def error_json(code: str, message: str, status: int = 400, **extra) -> JSONResponse:
    error = {"code": code, "message": message}
    error.update(extra)
    return JSONResponse(
        status_code=status,
        content={"error": error, "persona": ERROR_PERSONA, "request_id": str(uuid.uuid4())},
    )


async def otpcore_error_handler(request: Request, exc: OtpCoreError):
    body = exc.to_dict()
    return error_json(body.pop("code"), body.pop("message"), exc.status_code, **body)


async def http_exc_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict):
        shaped = {
            "error": exc.detail.get("error", {"code": "HTTP_ERROR", "message": "Request error."}),
            "persona": ERROR_PERSONA,
            "request_id": str(uuid.uuid4()),
        }
        return JSONResponse(status_code=exc.status_code, content=shaped, headers=exc.headers)
    return await http_exception_handler(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return error_json("VALIDATION_ERROR", "Invalid input.", 422, errors=errors)


async def ratelimit_handler(request: Request, exc: RateLimitExceeded):
    return error_json("RATE_LIMITED", "Too many requests. Please try again in a minute.", 429)


# =========================
# App Setup
# =========================
def create_app(core: Optional[OtpCore] = None) -> FastAPI:
    """
    Build the API.

    Args:
        core: Pre-wired services (tests). If None, lifespan builds them.
    """
    app = FastAPI(title="OTP Core API", lifespan=lifespan)
    app.state.core = core
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in ALLOWED.split(",") if o.strip()],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(OtpCoreError, otpcore_error_handler)
    app.add_exception_handler(HTTPException, http_exc_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(RateLimitExceeded, ratelimit_handler)

    app.include_router(verification_router)
    app.include_router(preferences_router)

    @app.get("/health")
    async def health(request: Request):
        current: Optional[OtpCore] = request.app.state.core
        db = await check_db_health(current.store if current else None)
        circuits = current.channels.health.snapshot() if current else {}
        return {
            "status": "ok" if db["database"] == "ok" else "degraded",
            "persona": ERROR_PERSONA,
            **db,
            "circuits": circuits,
        }

    return app


app = create_app()
