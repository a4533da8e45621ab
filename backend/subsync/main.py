"""FastAPI application entry point"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from subsync.core.config import settings
from subsync.core.logging import setup_logging
from subsync.core.otel import initialize_otel, instrument_fastapi, instrument_sqlalchemy
from subsync.services.factory import build_datastore, build_payment_provider
from subsync.services.notifications import LoggingNotifier

# Import routers
from subsync.api import webhooks

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan event handler for startup and shutdown"""
    # Startup
    if initialize_otel():
        logger.info(f"OpenTelemetry initialized, exporting to {settings.OTEL_EXPORTER_OTLP_ENDPOINT}")
    else:
        logger.info("OpenTelemetry not configured - running without distributed tracing")

    if settings.DATASTORE_BACKEND == "sql":
        from subsync.db.session import engine, init_db
        logger.info("Initializing database...")
        try:
            init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Database initialization failed: {e}")
            raise
        instrument_sqlalchemy(engine)

    # Tests install their own doubles before startup
    if not hasattr(app.state, "datastore"):
        app.state.datastore = build_datastore(settings)
    if not hasattr(app.state, "payment_provider"):
        app.state.payment_provider = build_payment_provider(settings)
    if not hasattr(app.state, "notifier"):
        app.state.notifier = LoggingNotifier()

    yield

    # Shutdown
    logger.info("Shutting down...")


# Create FastAPI app
app = FastAPI(
    title="Subsync Webhooks",
    description="Payment webhook verification and subscription reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

instrument_fastapi(app)

# Include routers
app.include_router(webhooks.router)


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )


# Prometheus metrics endpoint
@app.get("/metrics")
def metrics_endpoint():
    """Prometheus metrics endpoint"""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Health check endpoint
@app.get("/health")
def health_check():
    """Health check endpoint"""
    return {"status": "healthy"}
