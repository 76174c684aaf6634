"""
FastAPI application: retrieval, reference-answer generation and grading
"""
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import time
import uuid
from contextlib import asynccontextmanager
from sqlalchemy import text

from rag_grader.config import settings
from rag_grader.core.logging import get_logger, setup_logging, request_id_var
from rag_grader.core.exceptions import RagServiceError
from rag_grader.core.llm import close_llm_gateway
from rag_grader.routes import rag_routes, student_routes, teacher_routes
from rag_grader.db import engine, init_models

SERVICE_NAME = "rag-grader"
SERVICE_VERSION = "1.0.0"

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    setup_logging()
    logger.info("RAG grading service starting up",
                environment=settings.environment.value,
                debug=settings.debug)
    await init_models()

    yield

    # Shutdown
    logger.info("RAG grading service shutting down")
    await close_llm_gateway()
    await engine.dispose()


app = FastAPI(
    title="RAG Grading Service",
    version=SERVICE_VERSION,
    description="Reference-answer generation, answer grading and vector retrieval",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log all requests with timing"""
    start_time = time.time()

    logger.info("request_received",
                method=request.method,
                path=request.url.path,
                client=request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as e:
        logger.error("request_failed",
                     method=request.method,
                     path=request.url.path,
                     error=str(e),
                     duration_seconds=time.time() - start_time)
        raise

    duration = time.time() - start_time
    logger.info("request_completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_seconds=duration)
    response.headers["X-Process-Time"] = str(duration)
    return response


# Outermost middleware: binds the request id before request logging runs
@app.middleware("http")
async def add_request_id(request: Request, call_next):
    """Add request ID to all requests"""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RagServiceError)
async def handle_service_error(request: Request, exc: RagServiceError):
    """Map the service error hierarchy to HTTP status codes"""
    log = logger.warning if exc.status_code < 500 else logger.error
    log("Application error",
        error=exc.message,
        error_type=type(exc).__name__,
        details=exc.details,
        path=request.url.path)

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.message,
            "details": exc.details,
            "request_id": request_id_var.get()
        }
    )


@app.exception_handler(Exception)
async def handle_generic_exception(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error("Unexpected error",
                 error=str(exc),
                 error_type=type(exc).__name__,
                 path=request.url.path)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "details": {"message": str(exc)} if settings.debug else {},
            "request_id": request_id_var.get()
        }
    )


# Include routers
app.include_router(teacher_routes.router)
app.include_router(student_routes.router)
app.include_router(rag_routes.router)


@app.get("/health")
async def health():
    """Basic health check"""
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "environment": settings.environment.value
    }


@app.get("/health/ready")
async def readiness():
    """Readiness check with database connectivity"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Readiness check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "checks": {
                    "database": "failed"
                },
                "error": str(e)
            }
        )

    return {
        "status": "ready",
        "checks": {
            "database": "ok"
        }
    }


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint"""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )
