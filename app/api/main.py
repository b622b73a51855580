"""FastAPI application factory.

Assembles the API routers and, when ``DELIVERY_WORKER_COUNT`` is positive,
runs a delivery worker pool for the lifetime of the app.
This module is the authoritative app object — app/main.py re-exports it.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.api.routes.health import router as health_router
from app.api.routes.newsletters import router as newsletters_router
from app.core.logging import setup_logging
from app.core.settings import get_settings
from app.delivery.pool import DeliveryWorkerPool

logger = logging.getLogger(__name__)

WORKER_SHUTDOWN_TIMEOUT_S = 30


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    worker_count = get_settings().delivery_worker_count
    pool = DeliveryWorkerPool(worker_count) if worker_count > 0 else None
    if pool is not None:
        pool.start()
    yield
    if pool is not None:
        pool.stop(timeout=WORKER_SHUTDOWN_TIMEOUT_S)


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(newsletters_router)
