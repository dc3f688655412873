"""Common FastAPI dependency helpers.

Helpers take an ``HTTPConnection`` so they serve HTTP routes and the
progress WebSocket alike.
"""

import redis
from starlette.requests import HTTPConnection

from app.settings import Settings
from jobs.queue import RedisJobQueue
from relay.registry import ProgressRelay


def get_redis(connection: HTTPConnection) -> redis.Redis:
    client = getattr(connection.app.state, "redis_client", None)
    if client is None:
        raise RuntimeError("redis client not initialized")
    return client


def get_app_settings(connection: HTTPConnection) -> Settings:
    return connection.app.state.settings


def get_queue(connection: HTTPConnection) -> RedisJobQueue:
    return RedisJobQueue(get_redis(connection), get_app_settings(connection))


def get_relay(connection: HTTPConnection) -> ProgressRelay:
    relay = getattr(connection.app.state, "relay", None)
    if relay is None:
        raise RuntimeError("progress relay not initialized")
    return relay
