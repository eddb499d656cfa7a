"""
Orderflow Service
Order and payment workflows kept consistent by a saga coordinator
"""

import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from orderflow import __version__
from orderflow.api.errors import register_exception_handlers
from orderflow.api.routes import orders_router, payments_router, webhooks_router
from orderflow.core import RequestLoggingMiddleware, ServiceHealth, get_logger, setup_logging
from orderflow.core_settings import get_settings
from orderflow.infrastructure.cache import get_cache
from orderflow.infrastructure.db import engine, init_models
from orderflow.infrastructure.stripe_gateway import get_gateway

settings = get_settings()

SERVICE_NAME = settings.SERVICE_NAME
SERVICE_VERSION = os.getenv("SERVICE_VERSION", __version__)
SERVICE_DESCRIPTION = "Order and payment saga coordinator"

setup_logging(service_name=SERVICE_NAME, level=settings.LOG_LEVEL)

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")
    try:
        init_models()
        logger.info("Database models initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database models: {e}")
        raise
    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")

app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)

health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine=engine,
    cache_ping=lambda: get_cache().ping(),
    gateway_configured=lambda: get_gateway().is_configured(),
)
app.include_router(health_service.create_health_router())

app.include_router(orders_router)
app.include_router(payments_router)
app.include_router(webhooks_router)

@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }
