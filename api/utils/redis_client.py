import redis

from api.utils.config import Settings


def build_redis_client(settings: Settings) -> redis.Redis:
    return redis.Redis(
        host=settings.REDIS_HOST,
        port=settings.REDIS_PORT,
        db=settings.REDIS_DB,
    )
