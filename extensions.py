import os

import redis
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

_redis_client = None


def get_redis():
    """Shared redis client, or None when REDIS_URL is not configured."""
    global _redis_client
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return None
    if _redis_client is None:
        _redis_client = redis.from_url(redis_url, socket_timeout=5, decode_responses=True)
    return _redis_client
