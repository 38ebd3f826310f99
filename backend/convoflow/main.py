# /convoflow/main.py

import asyncio
import os
import time
import uuid

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from convoflow.config.settings import settings
from convoflow.routes import flows, public, webhooks
from convoflow.utils.lifecycle import lifespan
from convoflow.utils.metrics import response_time_histogram
from convoflow.utils.rate_limiter import limiter

REQUEST_TIMEOUT_SECONDS = 30.0
API_PREFIX = f"/api/{settings.api_version}"
# Webhook deliveries run their flows to completion; no timeout applies.
UNTIMED_PATH_PREFIXES = (f"{API_PREFIX}/webhooks",)


def is_timed(request: Request) -> bool:
    return not request.url.path.startswith(UNTIMED_PATH_PREFIXES)


async def request_context_middleware(request: Request, call_next):
    """Binds a request id to every log line emitted while the request runs."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)

    started = time.perf_counter()
    if is_timed(request):
        try:
            response = await asyncio.wait_for(call_next(request), timeout=REQUEST_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            response = JSONResponse({"detail": "Request timed out"}, status_code=504)
    else:
        response = await call_next(request)

    elapsed = time.perf_counter() - started
    response_time_histogram.labels(endpoint=request.url.path).observe(elapsed)
    response.headers["X-Process-Time"] = f"{elapsed:.4f}"
    response.headers["X-Request-ID"] = request_id
    return response


def create_app() -> FastAPI:
    docs_enabled = settings.environment != "production"
    application = FastAPI(
        title="Convoflow",
        version="1.0.0",
        description="Conversational flow engine for multi-tenant CRM channels",
        lifespan=lifespan,
        openapi_url=f"{API_PREFIX}/openapi.json" if docs_enabled else None,
        docs_url=f"{API_PREFIX}/docs" if docs_enabled else None,
        redoc_url=None,
    )

    application.state.limiter = limiter
    application.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(GZipMiddleware, minimum_size=1000)
    application.add_middleware(SlowAPIMiddleware)
    application.middleware("http")(request_context_middleware)

    application.include_router(public.router)
    application.include_router(webhooks.router, prefix=f"{API_PREFIX}/webhooks")
    application.include_router(flows.router, prefix=API_PREFIX)
    return application


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "convoflow.main:app",
        host=os.getenv("HOST", "127.0.0.1"),
        port=int(os.getenv("PORT", "8000")),
        reload=settings.environment == "development",
        workers=settings.workers if settings.environment == "production" else 1,
    )
