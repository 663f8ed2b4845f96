"""
BizPulse Metrics Platform
Main FastAPI application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.gzip import GZipMiddleware
from contextlib import asynccontextmanager

from bizpulse.config import get_settings
from bizpulse.utils.logger import log
from bizpulse import __version__

# Import routers
from bizpulse.api import health, insights, integrations, webhooks

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    log.info(f"Starting {settings.app_name} v{__version__}")
    log.info(f"Environment: {settings.environment}")

    # Initialize database
    try:
        from bizpulse.models.base import init_db
        init_db()
        log.info("Database initialized")
    except Exception as e:
        log.error(f"Database initialization error: {str(e)}")

    # Start the scheduler for periodic syncs, insights and digests
    from bizpulse.scheduler import start_scheduler, stop_scheduler
    try:
        start_scheduler()
        log.info("Scheduler started successfully")
    except Exception as e:
        log.error(f"Scheduler startup error: {str(e)}")

    yield

    # Shutdown
    try:
        stop_scheduler()
    except Exception as e:
        log.warning(f"Scheduler shutdown error: {str(e)}")
    log.info("Shutting down application")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=__version__,
    description="""
    Business Metrics and Insights Platform

    Syncs revenue, order, customer and traffic data from:
    - Stripe (payments and subscriptions)
    - Shopify (e-commerce)
    - Google Analytics 4 (web analytics)

    and turns it into ranked insights:
    - Period-over-period trends
    - Daily anomalies
    - Conversion, monetization, refund and payment-failure rules
    - Traffic channel opportunities
    """,
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Gzip compression
app.add_middleware(GZipMiddleware, minimum_size=500)

# Include routers
app.include_router(health.router, tags=["health"])
app.include_router(insights.router)
app.include_router(integrations.router)
app.include_router(webhooks.router)


@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "app": settings.app_name,
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
        "endpoints": {
            "link_integration": "POST /integrations",
            "list_integrations": "GET /integrations?organization_id=",
            "sync_all": "POST /integrations/sync",
            "sync_progress": "GET /integrations/sync/progress",
            "sync_integration": "POST /integrations/{id}/sync",
            "test_integration": "POST /integrations/{id}/test",
            "disconnect_integration": "POST /integrations/{id}/disconnect",
            "generate_insights": "POST /insights/{organization_id}/generate",
            "list_insights": "GET /insights/{organization_id}",
            "actionable_insights": "GET /insights/{organization_id}/actionable",
            "high_priority_insights": "GET /insights/{organization_id}/high-priority",
            "insight_summary": "GET /insights/{organization_id}/summary",
            "mark_insights_read": "POST /insights/{organization_id}/read",
            "webhook": "POST /webhooks/{platform}/{account_id}",
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "bizpulse.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
