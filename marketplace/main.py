import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from marketplace.api import admin, health, metrics, orders, plans, vendors
from marketplace.core.config import settings, validate_config
from marketplace.core.database import create_all_tables, get_database_url
from marketplace.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
)
from marketplace.core.logging import configure_logging
from marketplace.core.middleware.metrics import MetricsMiddleware
from marketplace.core.middleware.request_id import RequestIdMiddleware
from marketplace.core.validation import validate_env

configure_logging(settings.ENV)
validate_env()
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("marketplace")
    logger.info("Starting vendor ledger service...")
    app.state.startup_time = time.time()
    if get_database_url():
        create_all_tables()
    try:
        yield
    finally:
        logger.info("Stopping vendor ledger service...")


app = FastAPI(title="Organic Market - Vendor Ledger", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)
app.add_middleware(MetricsMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(plans.router)
app.include_router(vendors.router)
app.include_router(orders.router)
app.include_router(admin.router)
app.include_router(health.router)
app.include_router(metrics.router)
