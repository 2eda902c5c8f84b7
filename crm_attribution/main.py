"""
CRM Attribution - FastAPI Application Entry Point

Run with: uvicorn crm_attribution.main:app --host 0.0.0.0 --port 3000
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import __version__
from .config import get_attribution_settings, is_ad_resolver_enabled, is_record_store_configured
from .routes import webhook_router
from .services.retry_coordinator import APSchedulerRetryScheduler
from .webhooks.meta_webhook import build_webhook_handler, set_webhook_handler

settings = get_attribution_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown."""
    # Startup
    scheduler = APSchedulerRetryScheduler()
    scheduler.start()
    handler = build_webhook_handler(settings, scheduler=scheduler)
    set_webhook_handler(handler)

    logger.info(f"Starting CRM Attribution v{__version__}")
    logger.info(f"Kommo configured: {is_record_store_configured(settings)}")
    logger.info(f"Ad resolver enabled: {is_ad_resolver_enabled(settings)}")

    yield

    # Shutdown
    scheduler.shutdown()
    await handler.close()
    set_webhook_handler(None)
    logger.info("Shutting down CRM Attribution")


app = FastAPI(
    title="CRM Attribution",
    description="Write-once ad attribution for Kommo leads from Meta messaging webhooks",
    version=__version__,
    lifespan=lifespan,
)

app.include_router(webhook_router)


@app.get("/")
async def root():
    """Root endpoint with service info."""
    return {"service": "CRM Attribution", "version": __version__, "status": "up"}


@app.get("/health")
async def health():
    """Simple health check."""
    return {"status": "ok", "version": __version__}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "crm_attribution.main:app",
        host=settings.service_host,
        port=settings.service_port,
    )
