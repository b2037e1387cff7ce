from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
import time
import logging
import os

from .api.v1.appointments import router as appointments_router
from .api.v1.encounters import router as encounters_router
from .api.v1.notifications import router as notifications_router
from .core.config import settings
from .core.database import init_db
from .core.errors import (
    AppointmentNotFound,
    EngineError,
    InvalidTransition,
    RemoteCallFailed,
)
from .services.appointment_state import AppointmentStateMachine
from .services.encounter_service import WorkspaceRegistry
from .services.http_gateway import ClinicApiClient
from .services.store import SqlAlchemyStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    description="Appointment lifecycle and clinical notification engine",
    openapi_url="/api/v1/openapi.json",
    docs_url="/docs",
    redoc_url="/redoc"
)

# Middleware setup
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Only add TrustedHostMiddleware in production, not in testing
if not os.getenv("TESTING"):
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["localhost", "127.0.0.1", "*.localhost", "testserver"]
    )

# Custom middleware for request logging and timing
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)

    # Log request
    logger.info(
        f"{request.method} {request.url.path} - "
        f"Status: {response.status_code} - "
        f"Time: {process_time:.4f}s"
    )

    return response

# Exception handlers
def _error_response(status_code: int, error: str, exc: EngineError) -> JSONResponse:
    content = {"error": error, "code": exc.code, "message": exc.message}
    if exc.appointment_id:
        content["appointment_id"] = exc.appointment_id
    return JSONResponse(status_code=status_code, content=content)

@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return _error_response(409, "Conflict", exc)

@app.exception_handler(AppointmentNotFound)
async def appointment_not_found_handler(request: Request, exc: AppointmentNotFound):
    return _error_response(404, "Not Found", exc)

@app.exception_handler(RemoteCallFailed)
async def remote_call_failed_handler(request: Request, exc: RemoteCallFailed):
    logger.error(f"Upstream failure on {request.url.path}: {exc.message}")
    return _error_response(502, "Bad Gateway", exc)

@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    return _error_response(400, "Bad Request", exc)

@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=404,
        content={
            "error": "Not Found",
            "message": "The requested resource was not found",
            "path": str(request.url.path)
        }
    )

@app.exception_handler(500)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(f"Internal server error: {str(exc)}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred"
        }
    )

# Include routers
app.include_router(encounters_router, prefix="/api/v1")
app.include_router(appointments_router, prefix="/api/v1")
app.include_router(notifications_router, prefix="/api/v1")

def configure_engine(target: FastAPI, gateway=None) -> None:
    """Wire the gateway, state machine and workspace registry onto the app.

    Without an explicit gateway the remote clinic API is used when
    CLINIC_API_BASE_URL is set, the local database otherwise.
    """
    if gateway is None:
        gateway = ClinicApiClient() if settings.CLINIC_API_BASE_URL else SqlAlchemyStore()
    logger.info(f"Using {type(gateway).__name__} as clinic gateway")
    target.state.gateway = gateway
    target.state.state_machine = AppointmentStateMachine(gateway)
    target.state.registry = WorkspaceRegistry(target.state.state_machine, gateway, gateway)

# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    logger.info("Starting Clinic Encounter Engine...")

    # Check database connection
    db_url = settings.get_database_url
    db_type = "PostgreSQL" if "postgresql" in db_url else "SQLite" if "sqlite" in db_url else "Unknown"
    logger.info(f"Using {db_type} database")

    # Initialize database
    try:
        init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    if not hasattr(app.state, "registry"):
        configure_engine(app)

    logger.info("Application startup complete")

@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown."""
    logger.info("Shutting down Clinic Encounter Engine...")

    gateway = getattr(app.state, "gateway", None)
    if hasattr(gateway, "close"):
        await gateway.close()

# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": settings.VERSION
    }

# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Welcome to the Clinic Encounter Engine API",
        "version": settings.VERSION,
        "docs": "/docs",
        "redoc": "/redoc",
        "health": "/health"
    }

# API Info endpoint
@app.get("/api/v1/info")
async def api_info():
    """API information endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.VERSION,
        "endpoints": {
            "encounters": "/api/v1/encounters",
            "appointments": "/api/v1/appointments",
            "notifications": "/api/v1/notifications",
            "docs": "/docs",
            "openapi": "/api/v1/openapi.json"
        }
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "clinic_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info"
    )
