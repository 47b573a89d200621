"""FastAPI application factory.

Assembles all API routers and, when ``DISPATCH_WORKER_ENABLED`` is set,
runs the dispatch worker on a background thread for the app's lifetime.
This module is the authoritative app object; parcelnotify/main.py
re-exports it.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from parcelnotify.api.deps import (
    get_channels,
    get_dispatch_queue,
    get_retry_scheduler,
    get_template_manager,
)
from parcelnotify.api.routes.deliveries import router as deliveries_router
from parcelnotify.api.routes.health import router as health_router
from parcelnotify.api.routes.notifications import router as notifications_router
from parcelnotify.api.routes.subscriptions import router as subscriptions_router
from parcelnotify.api.routes.templates import router as templates_router
from parcelnotify.api.routes.unsubscribe import router as unsubscribe_router
from parcelnotify.core.logging import setup_logging
from parcelnotify.core.settings import get_settings
from parcelnotify.db.session import get_session_factory
from parcelnotify.dispatch.worker import DispatchWorker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    settings = get_settings()
    worker = None
    if settings.dispatch_worker_enabled:
        worker = DispatchWorker(
            get_dispatch_queue(),
            get_session_factory(),
            get_channels(),
            get_template_manager(),
            settings,
            retry_scheduler=get_retry_scheduler(),
        )
        worker.start()
    yield
    if worker is not None:
        worker.stop()


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)

app.include_router(health_router)
app.include_router(subscriptions_router)
app.include_router(unsubscribe_router)
app.include_router(deliveries_router)
app.include_router(notifications_router)
app.include_router(templates_router)
