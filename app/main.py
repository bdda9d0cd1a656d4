from fastapi import FastAPI
from contextlib import asynccontextmanager
from fastapi_limiter import FastAPILimiter
from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.config import settings
from app.core.logging import configure_logging, logger
from app.database import AsyncSessionLocal, init_models
from app.routers import notifications, webhooks
from app.services.channels.registry import build_default_registry
from app.services.dispatcher import NotificationDispatcher
from app.services.settings_store import DbSettingsProvider
from app.services.store import SqlNotificationStore
from app.utils.rate_limit import build_rate_limiter

# Configure logging
configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Notification dispatcher starting up", app_name=settings.APP_NAME)
    await init_models()

    redis = Redis(host=settings.REDIS_HOST, port=settings.REDIS_PORT, db=settings.REDIS_DB)
    limiter_ready = False
    try:
        await FastAPILimiter.init(redis)
        limiter_ready = True
        logger.info("FastAPI-Limiter initialized.")
    except (RedisError, OSError) as e:
        logger.warning("Redis unavailable, API rate limiting disabled", error=str(e))

    store = SqlNotificationStore(AsyncSessionLocal)
    rate_limiter = build_rate_limiter(redis)
    registry = build_default_registry(DbSettingsProvider(AsyncSessionLocal), AsyncSessionLocal, rate_limiter)
    dispatcher = NotificationDispatcher(store, registry, rate_limiter)
    app.state.store = store
    app.state.dispatcher = dispatcher

    if settings.PROCESSOR_ENABLED:
        await dispatcher.start()
    else:
        logger.info("Notification processor disabled; use POST /api/v1/notifications/process")

    yield

    logger.info("Notification dispatcher shutting down")
    await dispatcher.stop()

    if limiter_ready:
        await FastAPILimiter.close()
        logger.info("FastAPI-Limiter closed.")
    else:
        await redis.aclose()


app = FastAPI(lifespan=lifespan, title=settings.APP_NAME, version="1.0.0")

app.include_router(notifications.router)
app.include_router(webhooks.router)


@app.get("/health")
async def health_check():
    dispatcher = getattr(app.state, "dispatcher", None)
    return {"status": "ok", "processor_running": bool(dispatcher and dispatcher.is_running)}
