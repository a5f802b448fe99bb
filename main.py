"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events, and mounts the
Socket.IO server next to the HTTP API.

Run with:
    uvicorn main:socket_app
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from config import redis_client as redis_module
from config.database import close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings

# Service routers
from services.admin.router import router as admin_router
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.catalog.router import router as catalog_router
from services.message.router import router as message_router
from services.realtime.server import create_socket_app
from services.user.router import router as user_router


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    # Seed the service catalog, only in dev
    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Helping Hand API

Marketplace connecting customers with local helpers:
- **Auth**: phone + OTP (mocked) → JWT (15min) + refresh tokens
- **Bookings**: REQUESTED → ACCEPTED → IN_PROGRESS → COMPLETED → CLOSED
- **Chat**: per-booking rooms over Socket.IO with an HTTP fallback
- **Admin**: moderation, helper verification, booking overrides, audit log

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` header.
Socket.IO clients pass the same token as `auth.token` in the handshake.

### Roles
- `customer`: request help, chat, close and rate bookings
- `helper`: accept, start and complete bookings once verified
- `admin`: full platform access, overrides, audit log
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters, outermost first) ───────────────
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=["*"])
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Per-IP limit for unauthenticated requests (the OTP endpoints mostly).
        Authenticated traffic and health/metrics are not limited here.
        Fails open when Redis is unavailable.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths or request.headers.get("Authorization", "").startswith("Bearer "):
            return await call_next(request)

        client = redis_module.redis_client
        if client is not None:
            client_ip = request.client.host if request.client else "unknown"
            key = f"rate:unauth:{client_ip}"
            try:
                count = await client.incr(key)
                if count == 1:
                    await client.expire(key, 60)
            except Exception as e:
                logger.error(f"Rate limit check failed: {str(e)}")
                count = 0

            if count > settings.RATE_LIMIT_UNAUTH_PER_MINUTE:
                logger.warning(f"Rate limit exceeded for IP {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "detail": str(exc) if settings.DEBUG else "An internal server error occurred",
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            logger.error("Health check: database unreachable", exc_info=True)
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_module.redis_client is None:
                raise RuntimeError("Redis not initialized")
            await redis_module.redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
            logger.error("Health check: redis unreachable", exc_info=True)
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
            "socket": f"/{settings.SOCKETIO_PATH}",
        }

    # Register all service routers
    app.include_router(auth_router)
    app.include_router(user_router)
    app.include_router(catalog_router)
    app.include_router(booking_router)
    app.include_router(message_router)
    app.include_router(admin_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data():
    """Seed the service catalog on first run (development only)."""
    from sqlalchemy import func, select

    from config.database import AsyncSessionLocal
    from shared.models.models import Service, ServiceCategory

    async with AsyncSessionLocal() as db:
        count = await db.scalar(select(func.count(Service.id)))
        if count and count > 0:
            return  # Already seeded

        seed_services = [
            {"name": "Plumbing", "description": "Leaks, taps and blocked drains", "category": ServiceCategory.HOME, "icon": "wrench"},
            {"name": "Electrical Repairs", "description": "Switches, sockets and fittings", "category": ServiceCategory.HOME, "icon": "bolt"},
            {"name": "House Cleaning", "description": "Regular or deep cleaning", "category": ServiceCategory.HOME, "icon": "broom"},
            {"name": "Grocery Pickup", "description": "Shopping and delivery to your door", "category": ServiceCategory.ERRANDS, "icon": "cart"},
            {"name": "Parcel Drop-off", "description": "Courier and post office runs", "category": ServiceCategory.ERRANDS, "icon": "box"},
            {"name": "Device Setup", "description": "Phones, TVs and Wi-Fi", "category": ServiceCategory.TECH, "icon": "laptop"},
            {"name": "Elder Companionship", "description": "Company, walks and check-ins", "category": ServiceCategory.CARE, "icon": "heart"},
            {"name": "Pet Sitting", "description": "Feeding and walking pets", "category": ServiceCategory.CARE, "icon": "paw"},
        ]

        for s in seed_services:
            db.add(Service(**s))

        await db.commit()
        logger.info(f"Seeded {len(seed_services)} services")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()
socket_app = create_socket_app(app)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:socket_app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
