"""FaceChat Backend Application.

Face-authenticated group chat: accounts sign up and log in with a password
plus a face capture, create rooms, invite others by email, and chat in real
time over a websocket.

Modules:
    - auth: accounts, bearer tokens, face verification
    - rooms: room store, invitation lifecycle, administrative HTTP API
    - chat: connection registry, room fan-out, typing, message pipeline
    - mail: invitation emails
"""
import logging
from contextlib import asynccontextmanager
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .auth.faces import FaceMatcher
from .auth.router import router as auth_router
from .chat.router import router as chat_router
from .config import AppConfig, get_config
from .database import Clock, utcnow
from .errors import ChatError
from .mail import Mailer
from .rooms.router import invites_router
from .rooms.router import router as rooms_router
from .services import build_services

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# botocore.auth logs the full SigV4 canonical request, credentials included.
for _noisy in (
    "botocore",
    "boto3",
    "urllib3",
    "urllib3.connectionpool",
    "passlib",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    face_matcher: Optional[FaceMatcher] = None,
    mailer: Optional[Mailer] = None,
    clock: Clock = utcnow,
    monotonic: Optional[Callable[[], float]] = None,
) -> FastAPI:
    """Build the FastAPI application.

    All arguments are optional; tests pass an in-memory config and fakes.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        app_config = config or get_config()

        configured_level = getattr(logging, app_config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", app_config.logging.level.upper())

        kwargs = {"face_matcher": face_matcher, "mailer": mailer, "clock": clock}
        if monotonic is not None:
            kwargs["monotonic"] = monotonic
        services = build_services(app_config, **kwargs)
        app.state.services = services
        await services.start()
        logger.info(
            "FaceChat ready on http://%s:%s", app_config.server.host, app_config.server.port
        )

        yield  # Application runs here

        # Shutdown
        await services.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="FaceChat API",
        description="Face-authenticated group chat with realtime rooms",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    # Register all routers
    app.include_router(auth_router)
    app.include_router(rooms_router)
    app.include_router(invites_router)
    app.include_router(chat_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object with the number of live connections.
        """
        registry = app.state.services.registry
        return {"status": "ok", "connections": registry.connection_count}

    return app


app = create_app()
