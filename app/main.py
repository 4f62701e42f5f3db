"""
Main FastAPI application entry point.
Initializes the application with middleware, routes, error handlers and the
live-channel heartbeat.
"""
import asyncio
import logging
from uuid import uuid4
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from core.config import settings
from db.database import init_db

# Prometheus metrics
from prometheus_fastapi_instrumentator import Instrumentator

# Configure structured JSON logging
from core.logging_config import configure_logging
configure_logging(service_name="chatty-api", level=settings.log_level, enable_json=settings.log_json)

from api.errors import register_error_handlers
from api.websocket_manager import heartbeat_monitor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting Chatty API...")
    init_db()
    logger.info("Database initialized")

    heartbeat_task = asyncio.create_task(heartbeat_monitor())
    logger.info("WebSocket heartbeat monitor started")

    yield

    # Shutdown
    logger.info("Shutting down Chatty API...")

    heartbeat_task.cancel()
    try:
        await heartbeat_task
    except asyncio.CancelledError:
        logger.info("Heartbeat monitor stopped")


# Create FastAPI application
app = FastAPI(
    title="Chatty API",
    description="Group chat with scoped authorization, cursor pagination and live subscriptions",
    version="1.0.0",
    lifespan=lifespan
)

# Instrument FastAPI with Prometheus metrics
# Exposes /metrics endpoint with HTTP request metrics
Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Metrics"])


# Request ID middleware
class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware to add unique request_id to each request.
    The request_id is included in logs and error bodies for request tracing.
    """
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid4())
        request.state.request_id = request_id

        logger.info(
            f"{request.method} {request.url.path} - "
            f"Client: {request.client.host if request.client else 'unknown'}",
            extra={"request_id": request_id}
        )

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(f"Response: {response.status_code}", extra={"request_id": request_id})

        return response


# Add middlewares
app.add_middleware(RequestIDMiddleware)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


@app.get("/", tags=["Health"])
async def root():
    return {
        "message": "Chatty API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready"
    }


# Register endpoint routers
from api.endpoints import users_router, groups_router, websocket_router
from api.auth import router as auth_router
from api.health import router as health_router

app.include_router(auth_router)
app.include_router(health_router)
app.include_router(users_router, prefix="/v1/users", tags=["Users"])
app.include_router(groups_router, prefix="/v1/groups", tags=["Groups"])

# WebSocket endpoint
app.include_router(websocket_router, tags=["WebSocket"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower()
    )
