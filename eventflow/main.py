"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from eventflow.api import dead_letters, events, jobs, notifications, webhooks
from eventflow.config import get_settings
from eventflow.database import create_tables
from eventflow.logging_config import configure_logging
from eventflow.system import EventSystem

settings = get_settings()


def create_app(event_system: Optional[EventSystem] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        system = app.state.event_system
        if system.engine is not None:
            await create_tables(system.engine)
        await system.initialize()
        yield
        await system.dispose()

    app = FastAPI(
        title=settings.app_name,
        version="0.1.0",
        description="Event-driven background jobs, reminders and webhooks for property management",
        lifespan=lifespan,
    )
    app.state.event_system = event_system or EventSystem(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register routers
    app.include_router(events.router, prefix="/api/v1")
    app.include_router(jobs.router, prefix="/api/v1")
    app.include_router(webhooks.router, prefix="/api/v1")
    app.include_router(notifications.router, prefix="/api/v1")
    app.include_router(dead_letters.router, prefix="/api/v1")
    app.include_router(notifications.ws_router)

    @app.get("/health")
    async def health():
        system = app.state.event_system
        return {
            "status": "ok",
            "app": settings.app_name,
            "event_system": system.initialized,
            "job_processing": system.job_queue.is_running,
        }

    return app


app = create_app()
