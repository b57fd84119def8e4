"""Main FastAPI application."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from nudge import __version__
from nudge.api.endpoints import router
from nudge.config import Settings
from nudge.container import Container, build_container
from nudge.utils.logging import LogConfig, get_logger, setup_logging

logger = get_logger(__name__)


def create_app(settings: Settings | None = None, container: Container | None = None) -> FastAPI:
    """Build the application.

    Args:
        settings: Runtime configuration, read from the environment if omitted
        container: Pre-built handles, built from ``settings`` if omitted

    Returns:
        The FastAPI application
    """
    settings = settings or (container.settings if container else Settings())
    setup_logging(LogConfig(level=settings.log_level))

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.container = container or build_container(settings)
        await app.state.container.startup()
        logger.info(f"Nudge {__version__} started ({settings.environment})")
        try:
            yield
        finally:
            await app.state.container.shutdown()
            logger.info("Nudge stopped")

    app = FastAPI(
        title="Nudge",
        description="A conversational assistant that schedules reminders over SMS and web chat.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        openapi_tags=[
            {"name": "Conversation", "description": "Chat with the assistant, streamed or as a single reply."},
            {"name": "SMS", "description": "Inbound SMS webhook."},
            {"name": "Reminders", "description": "Read a user's reminders."},
            {"name": "Scheduler", "description": "Reminder delivery status and manual runs."},
            {"name": "Health", "description": "Service health monitoring and status checks."},
        ],
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("nudge.main:create_app", factory=True, host="0.0.0.0", port=8000, reload=True, log_level="info")
