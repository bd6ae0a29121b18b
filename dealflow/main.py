"""
main.py — Dealflow API application

Mounts the domain routers, the request-ID middleware, error rendering
and the in-process sweep scheduler.

Business Rules:
- Every response carries X-Request-ID; every log line inside a request is tagged with it
- DealflowError subclasses render as ErrorResponse with their context
- The scheduler does not start under TESTING or when SCHEDULER_ENABLED is off

Called by: uvicorn (dealflow.main:app)
Depends on: routers, logging_config, scheduler, config
"""

import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException

from .config import settings
from .exceptions import DealflowError
from .logging_config import setup_logging
from .routers import approvals, blacklist, cases, cron, nbfc, onboarding, risk, sla, transactions
from .scheduler import scheduler
from .schemas.errors import ErrorResponse


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    if os.environ.get("TESTING") or not settings.scheduler_enabled:
        logger.info("Scheduler disabled")
    else:
        scheduler.start()
    yield
    await scheduler.shutdown()


app = FastAPI(title="Dealflow", version="1.0.0", lifespan=lifespan)


# ── Middleware ───────────────────────────────────────────────────────


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = uuid.uuid4().hex[:8]
    request.state.request_id = request_id
    with logger.contextualize(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Error handlers ───────────────────────────────────────────────────


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


@app.exception_handler(DealflowError)
async def dealflow_error_handler(request: Request, exc: DealflowError):
    if exc.status_code >= 500:
        logger.error("{}: {}", exc.error_type, exc.message)
    body = ErrorResponse(
        error=exc.message,
        status_code=exc.status_code,
        request_id=_request_id(request),
        context={"type": exc.error_type, **exc.context},
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    body = ErrorResponse(error=str(exc.detail), status_code=exc.status_code, request_id=_request_id(request))
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True),
                        headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    body = ErrorResponse(
        error="Validation failed",
        status_code=422,
        request_id=_request_id(request),
        detail=[{"loc": list(e.get("loc", ())), "msg": e.get("msg", "")} for e in exc.errors()],
    )
    return JSONResponse(status_code=422, content=body.model_dump(exclude_none=True))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on {} {}", request.method, request.url.path)
    body = ErrorResponse(error="Internal server error", status_code=500, request_id=_request_id(request),
                         context={"type": type(exc).__name__})
    return JSONResponse(status_code=500, content=body.model_dump(exclude_none=True))


# ── Routes ───────────────────────────────────────────────────────────


@app.get("/health")
def health():
    return {"status": "ok"}


for module in (approvals, blacklist, cases, cron, nbfc, onboarding, risk, sla, transactions):
    app.include_router(module.router)
