"""
FastAPI application main module.
Hosts the skylink sweeper as a background task plus the small HTTP surface
used to report skylinks and probe health.
"""
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
from contextlib import asynccontextmanager
from blocker import __version__
from blocker.api.v1 import api_router
from blocker.config import LOG_SETTINGS
from blocker.database import Base, SessionLocal, engine
from blocker.jobs.sweeper import Sweeper
from blocker.models.db import BlockedSkylink, LatestBlockTimestamp  # noqa: F401 - register tables
from blocker.models.schemas import HealthResponse
from blocker.services import BatchDispatcher, NginxCachePurger, SkydAPI, SkylinkStore
from blocker.utils import setup_logging, get_logger

setup_logging(
    log_level=LOG_SETTINGS["level"] or "INFO",
    log_file=LOG_SETTINGS["file"],
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "skylink-blocker"


def build_sweeper(store: SkylinkStore, skyd: SkydAPI) -> Sweeper:
    """Wire dispatcher and sweeper. Raises ValueError on a missing collaborator."""
    dispatcher = BatchDispatcher(skyd, NginxCachePurger())
    return Sweeper(store, dispatcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Builds the collaborators (failing fast if one can't be built), starts the
    sweeper and stops it on shutdown.
    """
    logger.info("Application startup initiated")
    skyd: SkydAPI | None = None
    sweeper: Sweeper | None = None
    try:
        Base.metadata.create_all(bind=engine)
        store = SkylinkStore(SessionLocal)
        skyd = SkydAPI()
        sweeper = build_sweeper(store, skyd)
        app.state.skylink_store = store
        app.state.skyd = skyd
        app.state.sweeper = sweeper
        sweeper.start()
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if sweeper is not None:
            await sweeper.stop()
        if skyd is not None:
            await skyd.close()
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Skylink Blocker",
    description="Sweeps reported skylinks and adds them to skyd's blocklist.",
    version=__version__,
    lifespan=lifespan,
)

@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID and timing to every request.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    start_time = time.time()

    response = await call_next(request)

    process_time = time.time() - start_time
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )
    return response

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=str(exc.errors()),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
                for err in exc.errors()
            ],
            "request_id": request_id
        }
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        }
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )

@app.get("/health", tags=["health"], response_model=HealthResponse, summary="Health check")
async def health_check(request: Request) -> HealthResponse:
    """Service health plus sweeper state and skyd reachability."""
    skyd = getattr(request.app.state, "skyd", None)
    sweeper = getattr(request.app.state, "sweeper", None)
    skyd_up = await skyd.is_skyd_up() if skyd is not None else False
    sweeper_state = None
    status = "healthy" if skyd_up else "degraded"
    if sweeper is not None:
        sweeper_state = {"running": sweeper.running, **sweeper.state.snapshot()}
        if sweeper.state.consecutive_errors > 0:
            status = "degraded"
    return HealthResponse(
        status=status,
        service=SERVICE_NAME,
        version=__version__,
        skyd_up=skyd_up,
        sweeper=sweeper_state,
    )

app.include_router(api_router)

if __name__ == "__main__":
    import os
    import uvicorn

    logger.info("Starting blocker service")

    uvicorn.run(
        "blocker.main:app",
        host=os.getenv("BLOCKER_HOST", "0.0.0.0"),
        port=int(os.getenv("BLOCKER_PORT", "4000")),
        log_level="info",
        access_log=True
    )
