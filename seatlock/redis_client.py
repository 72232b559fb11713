import redis.asyncio as aioredis

from seatlock.config import settings


def create_redis_client(url: str = None) -> aioredis.Redis:
    return aioredis.from_url(url or settings.REDIS_URL, decode_responses=True)


# shared client for the API process; workers build their own per event loop
redis_client = create_redis_client()
