"""
MESSAI MLOps API — FastAPI Application Entry Point
"""

from contextlib import asynccontextmanager

import pydantic
import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import get_settings
from core.errors import (
    CircularDependencyError,
    MLOpsError,
    NotFoundError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
)
from ml.platform import build_platform

settings = get_settings()
logger = structlog.get_logger()

ERROR_STATUS: list[tuple[type[MLOpsError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (CircularDependencyError, status.HTTP_409_CONFLICT),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (StepTimeoutError, status.HTTP_504_GATEWAY_TIMEOUT),
    (StepExecutionError, status.HTTP_502_BAD_GATEWAY),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("MESSAI MLOps API starting up", version=settings.app_version)
    if getattr(app.state, "platform", None) is None:
        app.state.platform = build_platform(settings)
    yield
    logger.info("MESSAI MLOps API shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="ML operations and research knowledge-graph backend",
    lifespan=lifespan,
)


@app.exception_handler(MLOpsError)
async def domain_error_handler(request: Request, exc: MLOpsError) -> JSONResponse:
    """Map the domain error taxonomy onto HTTP status codes (first match wins)."""
    code = next(
        (code for error_type, code in ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    body = {"detail": exc.message}
    if isinstance(exc, ValidationError) and exc.errors:
        body["errors"] = exc.errors
    logger.warning("api.domain_error", path=request.url.path, status=code, error=exc.message)
    return JSONResponse(status_code=code, content=body)


@app.exception_handler(pydantic.ValidationError)
async def model_validation_handler(request: Request, exc: pydantic.ValidationError) -> JSONResponse:
    """Domain models built inside a handler (e.g. a TimeWindow with end < start)."""
    errors = [f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()]
    return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": "Invalid input", "errors": errors})


# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Import and register routers
from api.v1.routers import features, knowledge_graph, ml_alerts, models, workflows

app.include_router(models.router)
app.include_router(ml_alerts.router)
app.include_router(features.router)
app.include_router(workflows.router)
app.include_router(knowledge_graph.router)


@app.get("/health")
async def health_check():
    """Health check endpoint for load balancers."""
    return {"status": "healthy", "version": settings.app_version}
