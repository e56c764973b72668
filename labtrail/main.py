"""Main FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from labtrail.api.routes import router
from labtrail.audit.recorder import AuditRecorder
from labtrail.audit.store import SqlAuditStore
from labtrail.config import ALLOWED_ORIGINS
from labtrail.database import Base, SessionLocal, engine
from labtrail.errors import LabTrailError
from labtrail.logging_config import configure_logging
# Import models to register them with SQLAlchemy Base
from labtrail.models.audit import AuditLog  # noqa: F401
from labtrail.models.domain import LabOrder, Result, User  # noqa: F401
from labtrail.pipeline import Pipeline

logger = logging.getLogger(__name__)

configure_logging()

recorder = AuditRecorder(SqlAuditStore(SessionLocal))


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create database tables
    Base.metadata.create_all(bind=engine)
    logger.info("LabTrail API ready")
    yield
    # Give in-flight audit writes a chance before the process goes away
    if not recorder.drain(timeout=5.0):
        logger.warning("Shutting down with audit writes still pending; they may be lost")
    recorder.shutdown(wait_for_pending=False)


# Create FastAPI app
app = FastAPI(
    title="LabTrail - Lab Orders & Results API",
    description="Role-gated lab orders and results with an append-only audit trail.",
    version="0.1.0",
    lifespan=lifespan,
)
app.state.pipeline = Pipeline(recorder)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)


@app.exception_handler(LabTrailError)
async def labtrail_error_handler(request: Request, exc: LabTrailError):
    if exc.status_code >= 500:
        logger.error("%s %s - %s - %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("%s %s - 500 - %s", request.method, request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Include API routes
app.include_router(router, prefix="/api", tags=["LabTrail"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "LabTrail"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
