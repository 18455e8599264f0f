# campaign_engine/main.py - Campaign automation engine API

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
import logging
import time

from .config.settings import settings
from .config.database import connect_to_mongo, close_mongo_connection, create_indexes
from .routers import automation_campaigns
from .utils.campaign_cron import start_campaign_cron, stop_campaign_cron

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def check_transport_configuration():
    """Warn about transports that will fail every send block"""
    if not settings.is_brevo_configured():
        logger.warning("⚠️ Brevo is not configured - send_email blocks will fail")
    if not settings.is_whatsapp_configured():
        logger.warning("⚠️ WhatsApp Cloud API is not configured - send_whatsapp blocks will fail")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    logger.info(f"🚀 Starting {settings.app_name}...")
    await connect_to_mongo()

    await create_indexes()

    await check_transport_configuration()
    logger.info("✅ Transport configuration checked")

    if settings.campaign_cron_enabled:
        try:
            await start_campaign_cron()
            logger.info("✅ Campaign cron started")
        except Exception as e:
            logger.error(f"❌ Failed to start campaign cron: {e}")
            logger.warning("⚠️ Continuing without campaign cron; use POST /api/v1/campaigns/sweep")
    else:
        logger.info("Campaign cron disabled by configuration")

    logger.info("✅ Application startup complete")

    yield

    # Shutdown
    logger.info(f"🛑 Shutting down {settings.app_name}...")

    try:
        await stop_campaign_cron()
        logger.info("✅ Campaign cron stopped")
    except Exception as e:
        logger.error(f"❌ Error stopping campaign cron: {e}")

    await close_mongo_connection()
    logger.info("✅ Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Campaign automation engine - block graphs, lead enrollment and scheduled execution",
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add processing time to response headers"""
    start_time = time.time()
    try:
        response = await call_next(request)
        process_time = time.time() - start_time
        response.headers["X-Process-Time"] = str(process_time)
        return response
    except Exception as e:
        logger.error(f"Request failed: {request.method} {request.url} - Error: {str(e)}", exc_info=True)
        raise


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "message": f"{settings.app_name} is running",
        "version": settings.version,
        "modules": ["campaigns"],
        "campaign_engine": settings.get_campaign_engine_config()
    }


@app.get("/")
async def root():
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.version,
        "docs": "/docs" if settings.debug else "Docs disabled in production",
        "endpoints": {
            "campaigns": "/api/v1/campaigns",
            "health": "/health"
        }
    }


app.include_router(
    automation_campaigns.router,
    prefix="/api/v1/campaigns",
    tags=["Automation Campaigns"]
)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "campaign_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
