# rallio/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from rallio.core.config import settings
from rallio.database import models
from rallio.database.database import engine
from rallio.errors import NotAuthenticated, RallioError

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Lifespan events (startup/shutdown)
@asynccontextmanager
async def lifespan(app: FastAPI):
    # refuses to boot production without a webhook secret
    settings.validate_for_startup()

    # Ensure DB models/tables exist (migrations own production schemas)
    models.Base.metadata.create_all(bind=engine)

    # Redis init (non-fatal; locks fall back to the database)
    if settings.LOCK_BACKEND == "redis":
        try:
            from rallio.core.redis import get_redis
            await get_redis()
            logger.info("✓ Redis connected successfully")
        except Exception as e:
            logger.warning(f"⚠ Redis connection failed (webhook locks unavailable): {e}")
    else:
        logger.info("ℹ️ Processing locks use the database backend")

    yield

    try:
        from rallio.core.redis import close_redis
        await close_redis()
    except Exception as e:
        logger.error(f"Error closing Redis: {e}")
    logger.info("✅ Graceful shutdown complete")


# Build FastAPI app
fastapi_app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Court availability, reservations, payments and queues",
    version=settings.VERSION,
    lifespan=lifespan,
)

fastapi_app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@fastapi_app.exception_handler(RallioError)
async def rallio_error_handler(request: Request, exc: RallioError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, NotAuthenticated) else None
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# --- App routers under /api; gateway webhook and health at the root ---
from rallio.routers import court_routes, health, payment_routes, queue_routes, reservation_routes  # noqa: E402

fastapi_app.include_router(court_routes.router, prefix="/api")
fastapi_app.include_router(reservation_routes.router, prefix="/api")
fastapi_app.include_router(reservation_routes.admin_router, prefix="/api")
fastapi_app.include_router(payment_routes.router)
fastapi_app.include_router(queue_routes.router, prefix="/api")
fastapi_app.include_router(health.router)


@fastapi_app.get("/")
def root():
    return {"message": "🏸 Rallio API is running successfully!"}


app = fastapi_app
