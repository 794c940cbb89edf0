"""KidsLink Messaging Backend Application.

This is the main entry point for the KidsLink messaging service: the
real-time chat core of the kindergarten management system, where parents,
teachers and school staff exchange text and image messages.

Modules:
    - chat: WebSocket connection registry, broadcast groups and message pipeline
    - conversations: DuckDB persistence and the /api/messaging REST endpoints
    - images: image upload backends (local disk or S3) and image download
    - auth: bearer-token (JWT) verification
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kidslink.auth import TokenService
from kidslink.chat.manager import ConnectionManager
from kidslink.chat.router import router as chat_router
from kidslink.chat.service import ChatService
from kidslink.config import AppConfig, get_config
from kidslink.conversations.router import router as conversations_router
from kidslink.conversations.service import MessagingStore
from kidslink.images.router import router as images_router
from kidslink.images.service import create_image_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# botocore.auth logs the full SigV4 canonical request, including the
# security token. urllib3/httpx/httpcore log every TCP connection.
for _noisy in (
    "botocore",
    "boto3",
    "urllib3",
    "urllib3.connectionpool",
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(config: Optional[AppConfig] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Configuration to use; defaults to the process-wide one
            loaded from the YAML files.
    """
    app_config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Construct every service at startup and release them at shutdown."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in kidslink.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, app_config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", app_config.logging.level.upper())

        store = MessagingStore(db_path=app_config.database.path)
        image_store = create_image_store(app_config)
        manager = ConnectionManager()

        app.state.config = app_config
        app.state.store = store
        app.state.image_store = image_store
        app.state.manager = manager
        app.state.token_service = TokenService(
            secret_key=app_config.secrets.jwt.secret_key,
            algorithm=app_config.auth.algorithm,
            leeway_seconds=app_config.auth.leeway_seconds,
        )
        app.state.chat_service = ChatService(
            store=store,
            image_store=image_store,
            manager=manager,
            system_user_ids=app_config.auth.system_user_ids,
        )
        logger.info(
            f"KidsLink messaging ready on http://{app_config.server.host}:{app_config.server.port} "
            f"(database={app_config.database.path}, images={app_config.images.backend})"
        )

        yield  # Application runs here

        # Shutdown
        image_store.close()
        store.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="KidsLink Messaging API",
        description="Real-time messaging backend for the KidsLink kindergarten system",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Register all routers
    app.include_router(chat_router)
    app.include_router(conversations_router)
    app.include_router(images_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


def run() -> None:
    """Run the server with uvicorn using the configured host and port."""
    config = get_config()
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    run()
