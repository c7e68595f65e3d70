from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import middleware
from app.common.middleware import TenantMiddleware, SecurityHeadersMiddleware

# Import routers
from app.modules.quotes.router import router as quotes_router
from app.modules.invoices.router import router as invoices_router

# Import models for table creation
import app.modules.quotes.models
import app.modules.invoices.models

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="Billing API",
    description="Multi-tenant billing API: quotes, invoices and quote-to-invoice conversion",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TenantMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(quotes_router)
app.include_router(invoices_router)

@app.get("/")
async def read_root():
    return {
        "message": "Billing API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}

@app.on_event("startup")
async def startup_event():
    logger.info("Billing API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Record store backend: {settings.RECORD_STORE_BACKEND}")

    # Create database tables (only for development - use migrations in production)
    if settings.ENVIRONMENT == "development" and settings.RECORD_STORE_BACKEND == "sql":
        from app.database.database import sync_engine, Base
        try:
            Base.metadata.create_all(bind=sync_engine)
        except Exception as e:
            logger.warning(f"Table creation skipped or failed: {e}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Billing API shutting down...")
