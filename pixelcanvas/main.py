"""
Pixel Canvas - Main Application
FastAPI service for paid canvas placements settled on Solana
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError
import uvicorn

from pixelcanvas import __version__
from pixelcanvas.core.config import settings
from pixelcanvas.core.database import init_db
from pixelcanvas.core.errors import AppError, app_error_handler, store_error_handler
from pixelcanvas.core.security import SecurityHeadersMiddleware
from pixelcanvas.services.redis_service import redis_service
from pixelcanvas.services.rpc_manager import rpc_manager, start_rpc_manager
from pixelcanvas.services.sweeper import start_sweeper
from pixelcanvas.api.routes import admin, payments, placements


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


# ============================================================
# LIFESPAN
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    # Startup
    print(f"🚀 Starting {settings.APP_NAME} ({settings.SOLANA_NETWORK})")
    if not settings.RECIPIENT_WALLET_ADDRESS:
        print("⚠️  RECIPIENT_WALLET_ADDRESS is not set, payments will fail")

    await init_db()
    print("✅ Database initialized")

    await redis_service.connect()
    print("✅ Redis connected")

    await start_rpc_manager()
    print("✅ RPC Manager started")

    sweeper_task = start_sweeper()
    print("✅ Reconciliation sweeper started")

    yield

    # Shutdown
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    await rpc_manager.stop_health_checks()
    await redis_service.disconnect()
    print("🛑 Shutdown complete")


# ============================================================
# APP INITIALIZATION
# ============================================================

app = FastAPI(
    title=settings.APP_NAME,
    version=__version__,
    lifespan=lifespan
)

# Browser wallets call the API directly from the canvas page
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-Admin-Token"],
)

# Security headers middleware
app.add_middleware(SecurityHeadersMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(SQLAlchemyError, store_error_handler)

# Include routers
app.include_router(placements.router)
app.include_router(payments.router)
app.include_router(admin.router)


# ============================================================
# HEALTH CHECK
# ============================================================

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "version": __version__, "network": settings.SOLANA_NETWORK}


# ============================================================
# MAIN
# ============================================================

def run():
    uvicorn.run(
        "pixelcanvas.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
