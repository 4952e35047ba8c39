"""Main FastAPI application."""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import time
import uuid

from switchboard import metrics
from switchboard.config import config
from switchboard.database import init_db
from switchboard.errors import SwitchboardError
from switchboard.logging_config import bind_context, clear_context, logger


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    # Startup
    logger.info("application_starting", version="1.0.0")
    init_db()  # Initialize database
    logger.info("database_initialized")
    logger.info("twilio_configured", configured=config.has_twilio_config())
    logger.info("ring_timeout", seconds=config.RING_TIMEOUT_SECONDS)

    yield

    # Shutdown
    logger.info("application_shutting_down")


app = FastAPI(
    title="Switchboard API",
    description="Multi-agent call coordination: ring, claim, park, transfer",
    version="1.0.0",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def observe_request(request: Request, call_next):
    """Bind a request id for log lines and record request metrics."""
    clear_context()
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    bind_context(request_id=request_id, method=request.method, path=request.url.path)

    start = time.perf_counter()
    response = await call_next(request)
    route = request.scope.get("route")
    endpoint = route.path if route is not None else request.url.path
    metrics.api_requests_total.labels(request.method, endpoint, response.status_code).inc()
    metrics.api_request_duration.observe(time.perf_counter() - start)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(SwitchboardError)
async def switchboard_error_handler(request: Request, exc: SwitchboardError):
    """Map typed coordination errors to HTTP."""
    log = logger.warning if exc.status_code < 500 else logger.error
    log("request_failed", path=request.url.path, error=exc.code, detail=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Include routers
from switchboard.health import router as health_router
from switchboard.routers.core import router as core_router
from switchboard.routers.calls import router as calls_router
from switchboard.routers.agents import router as agents_router
from switchboard.routers.twilio import router as twilio_router

app.include_router(health_router)
app.include_router(core_router)
app.include_router(calls_router)
app.include_router(agents_router)
app.include_router(twilio_router)
