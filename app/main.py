from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from redis.asyncio import Redis

from app.cache.layer import CacheStore
from app.core.config import Settings, get_settings
from app.core.errors import register_exception_handlers
from app.core.logging import setup_logging
from app.database import (
    check_database,
    create_db_and_tables,
    create_engine,
    create_session_factory,
)
from app.ratelimit.limiter import RateLimiter
from app.ratelimit.policies import build_policies
from app.routers import auth, tasks

import logging

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, redis: Redis | None = None) -> FastAPI:
    """
    Build the application.

    `redis` substitutes the Redis client (tests pass an in-memory fake);
    otherwise one is created from settings.redis_dsn at startup.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings.log_level)

        engine = create_engine(settings)
        if settings.auto_create_tables:
            await create_db_and_tables(engine)

        cache_store = CacheStore(settings, redis=redis)
        await cache_store.init_cache()

        app.state.engine = engine
        app.state.session_factory = create_session_factory(engine)
        app.state.cache_store = cache_store
        app.state.rate_limiter = RateLimiter(cache_store)
        app.state.rate_limit_policies = build_policies(settings)
        logger.info(f"Task Tracker API started ({settings.environment})")

        yield

        await cache_store.close()
        await engine.dispose()

    app = FastAPI(
        title="Task Tracker API",
        description="Per-user task tracking with JWT auth, Redis caching and rate limiting",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    register_exception_handlers(app, expose_errors=settings.is_development)

    # Include routers
    app.include_router(auth.router)
    app.include_router(tasks.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Task Tracker API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health_check(request: Request):
        database_ok = await check_database(request.app.state.engine)
        cache_store: CacheStore = request.app.state.cache_store
        return {
            "status": "healthy" if database_ok else "degraded",
            "database": database_ok,
            "cache": cache_store.get_stats(),
        }

    return app


app = create_app()
