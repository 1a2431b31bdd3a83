from collections.abc import Generator
from functools import lru_cache

import redis
from fastapi import Request
from sqlmodel import Session

from api.utils.config import Settings


@lru_cache
def load_settings() -> Settings:
    """Build the process-wide settings once, at startup."""
    return Settings()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_session(request: Request) -> Generator[Session]:
    with Session(request.app.state.engine) as session:
        yield session


def get_redis(request: Request) -> redis.Redis:
    return request.app.state.redis
