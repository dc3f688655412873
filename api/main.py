"""Entrypoint for the API service."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Callable

import redis
from fastapi import FastAPI

from app.error_handlers import install_error_handlers
from app.logging import configure_logging
from app.settings import Settings, get_settings
from relay.bridge import RedisProgressListener
from relay.registry import ProgressRelay

from .routes import router

LOGGER = logging.getLogger("reelsmith.api")

RedisFactory = Callable[[Settings], redis.Redis]


def _default_redis(settings: Settings) -> redis.Redis:
    return redis.from_url(settings.redis_url, decode_responses=True)


def create_app(
    settings: Settings | None = None, redis_factory: RedisFactory | None = None
) -> FastAPI:
    settings = settings or get_settings()
    factory = redis_factory or _default_redis

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings)
        LOGGER.info("starting api service", extra={"service": settings.service_name})
        client = factory(settings)
        relay = ProgressRelay()
        listener = RedisProgressListener(client, settings.progress_channel, relay)
        try:
            listener.start()
        except redis.RedisError as exc:
            LOGGER.warning(
                "progress listener unavailable, clients will poll",
                extra={"error": str(exc)},
            )
        app.state.redis_client = client
        app.state.relay = relay
        try:
            yield
        finally:
            listener.stop()
            relay.clear()
            client.close()
            LOGGER.info("stopped api service", extra={"service": settings.service_name})

    application = FastAPI(title="Reelsmith API", lifespan=lifespan, debug=settings.debug)
    application.state.settings = settings
    install_error_handlers(application)
    application.include_router(router, prefix=settings.api_prefix)
    return application


app = create_app()


def run() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "api.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
