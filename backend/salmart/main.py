"""
FastAPI application entry point.

WHAT: Build the chat server app and run it under uvicorn
WHY: One place wires the message store, room hub, routes and error handling
HOW: create_app() factory; module-level `app` for uvicorn and tests
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.v1.router import api_router
from .core.config import settings
from .core.database import close_db, init_db, ping_database
from .middleware.error_handler import register_exception_handlers
from .services.room_hub import room_hub
from .utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup creates the chat tables; shutdown drops every live room
    subscription before the engine is disposed.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")
    init_db()
    db_status = ping_database()
    logger.info(f"Message store ready (journal_mode={db_status['journal_mode']})")

    yield

    logger.info(f"Shutting down; closing {len(room_hub.rooms)} live rooms")
    room_hub.clear()
    close_db()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Assemble the FastAPI app with CORS, error handlers and the v1 routes."""
    setup_logging()

    application = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(application)
    application.include_router(api_router)

    @application.get("/")
    async def root():
        return {
            "app": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    return application


app = create_app()


def run():
    """Console entry point: serve the chat API."""
    import uvicorn
    uvicorn.run(
        "salmart.main:app",
        host=settings.SERVER_HOST,
        port=settings.SERVER_PORT,
        reload=settings.DEBUG
    )


if __name__ == "__main__":
    run()
