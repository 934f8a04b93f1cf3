"""chatsync Backend Application.

This is the main entry point for the chatsync backend service: a two-party
real-time chat server with live presence, typing indicators and message
edit/delete/reaction/read updates.

Modules:
    - chat: WebSocket event surface, presence, conversation routing, mutations
    - store: DuckDB-backed user and message records, account/history REST
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatsync.chat.errors import failures
from chatsync.chat.manager import manager
from chatsync.chat.router import router as chat_router
from chatsync.config import get_config
from chatsync.store.router import router as store_router
from chatsync.store.service import RecordStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chatsync.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    store = RecordStore.get_instance(config.store.db_path)
    manager.configure(
        store,
        timeout_seconds=config.store.timeout_seconds,
        retry_once=config.store.retry_once,
    )
    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    # Shutdown
    await manager.presence.drain()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="chatsync API",
    description="Real-time two-party chat backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(store_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Server status and the number of reported persistence failures.
    """
    return {"status": "ok", "persistenceFailures": failures.total}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "chatsync.main:app",
        host=config.server.host,
        port=config.server.port,
        reload=config.server.reload,
    )
