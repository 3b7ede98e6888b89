"""
Multi-Carrier Shipping
FastAPI application entry point
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from multicarrier import __version__
from multicarrier.api.routes import shipping
from multicarrier.core.circuit_breaker import get_all_circuit_breakers
from multicarrier.core.config import settings
from multicarrier.core.database import AsyncSessionLocal, engine
from multicarrier.core.rate_cache import rate_cache
from multicarrier.core.redis_client import close_redis
from multicarrier.modules.shipping.carriers import CarrierFactory

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log registered carriers on startup; release Redis and the DB pool on shutdown."""
    logger.info(f"Registered carrier adapters: {CarrierFactory.get_registered_carriers()}")

    yield

    await close_redis()
    await engine.dispose()
    logger.info("Shipping service shut down")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Multi-carrier rate shopping and shipment lifecycle API",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.include_router(shipping.router, prefix="/api", tags=["Shipping"])


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check with a database ping. Returns 503 if the database is unreachable."""
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with AsyncSessionLocal() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status


@app.get("/health/carriers", tags=["Health"])
async def carrier_health():
    """Circuit breaker state per carrier and rate cache statistics."""
    return {
        "circuits": {
            name: breaker.get_metrics()
            for name, breaker in get_all_circuit_breakers().items()
        },
        "rate_cache": rate_cache.get_stats(),
    }
