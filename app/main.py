"""
FastAPI Application Entry Point

This module initializes the FastAPI application and integrates:
- Reservation, availability and refund routes
- The expiry sweep job endpoint
- Database connections
- Payment and WhatsApp clients
- Lifecycle events
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api import (
    appointments_router,
    availability_router,
    jobs_router,
    reservations_router,
)
from app.config import settings
from app.db.session import (
    check_database_connection,
    close_database_connection,
    get_session_factory,
)
from app.services.notifier import WhatsAppNotifier
from app.services.payment_gateway import MercadoPagoGateway
from app.services.reservation import WatcherRegistry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"

# Log startup information
logger.info("=" * 60)
logger.info("Barbershop Reservation API")
logger.info("=" * 60)
logger.info(f"Python version: {sys.version}")
logger.info(f"Debug mode: {settings.debug}")
logger.info(f"Log level: {settings.log_level}")
logger.info(f"Database URL: {settings.database_url_str.split('@')[0]}@***")
logger.info(f"Mercado Pago token configured: {'Yes' if settings.mercado_pago_access_token else 'No'}")
logger.info(f"WhatsApp token configured: {'Yes' if settings.whatsapp_api_token else 'No'}")
logger.info(f"Hold duration: {settings.hold_duration_minutes} min, poll every {settings.poll_interval_seconds}s")
logger.info("=" * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context manager.

    Handles startup and shutdown events:
    - Verifies the database connection
    - Builds the payment gateway, notifier and watcher registry
    - Stops running payment watchers and closes connections on shutdown
    """
    # Startup
    logger.info("🚀 Starting application...")

    app.state.gateway = MercadoPagoGateway()
    app.state.notifier = WhatsAppNotifier()
    app.state.watchers = WatcherRegistry(
        get_session_factory(),
        app.state.gateway,
        app.state.notifier,
    )

    try:
        # Check database connection
        logger.info("Checking database connection...")
        db_healthy = await check_database_connection()
        if db_healthy:
            logger.info("✅ Database connection verified")
        else:
            logger.error("❌ Database connection failed!")
            logger.warning("Application will start but database operations will fail")

        logger.info("✅ Application startup complete")
        logger.info("=" * 60)

    except Exception as e:
        logger.error(f"❌ Error during startup: {e}", exc_info=True)
        logger.warning("Application will continue but may not function properly")

    yield

    # Shutdown
    logger.info("=" * 60)
    logger.info("🛑 Shutting down application...")

    try:
        logger.info(f"Stopping {len(app.state.watchers)} payment watchers...")
        await app.state.watchers.stop_all()
        logger.info("✅ Payment watchers stopped")

        # Close database connections
        logger.info("Closing database connections...")
        await close_database_connection()
        logger.info("✅ Database connections closed")

        logger.info("✅ Application shutdown complete")

    except Exception as e:
        logger.error(f"❌ Error during shutdown: {e}", exc_info=True)

    logger.info("=" * 60)


# Initialize FastAPI application
app = FastAPI(
    title="Barbershop Reservation API",
    description=(
        "Multi-tenant barbershop booking backend. Holds slots while the "
        "customer pays the PIX prepayment, confirms them once paid and "
        "releases holds that run out of time."
    ),
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.debug else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    """
    Root endpoint.

    Returns basic API information.
    """
    return {
        "message": "Barbershop Reservation API",
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "docs": "/docs" if settings.debug else "disabled in production",
            "availability": "/availability",
            "reservations": "/reservations",
            "appointments": "/appointments",
            "expire_holds": "/jobs/expire-holds",
        }
    }


@app.get("/health")
async def health_check():
    """
    Application health check endpoint.

    Checks:
    - API responsiveness
    - Database connectivity

    Returns:
        JSONResponse with health status
    """
    try:
        db_healthy = await check_database_connection()

        health_status = {
            "status": "healthy" if db_healthy else "degraded",
            "api": "operational",
            "database": "connected" if db_healthy else "disconnected",
            "version": APP_VERSION,
        }

        return JSONResponse(
            status_code=200 if db_healthy else 503,
            content=health_status
        )

    except Exception as e:
        logger.error(f"Health check failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=503,
            content={
                "status": "unhealthy",
                "api": "operational",
                "database": "error",
                "error": str(e),
                "version": APP_VERSION,
            }
        )


app.include_router(availability_router)
app.include_router(reservations_router)
app.include_router(appointments_router)
app.include_router(jobs_router)

logger.info("✅ FastAPI application initialized")

# If running with uvicorn directly (not through import)
if __name__ == "__main__":
    import uvicorn

    logger.info("=" * 60)
    logger.info("Starting uvicorn server...")
    logger.info(f"Host: {settings.app_host}")
    logger.info(f"Port: {settings.app_port}")
    logger.info("=" * 60)

    uvicorn.run(
        "app.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
