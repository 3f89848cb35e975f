"""Redis connection helpers shared by the session store and the app factory."""

from typing import Dict, Any
from urllib.parse import quote

from config import settings


def get_redis_config() -> Dict[str, Any]:
    """Collect the Redis connection parameters from settings."""
    password = settings.REDIS_PASSWORD
    auth = f":{quote(password, safe='')}@" if password else ""
    redis_url = (
        f"redis://{auth}{settings.REDIS_HOST}:{settings.REDIS_SERVER_PORT}/{settings.REDIS_DB}"
    )
    return {
        "host": settings.REDIS_HOST,
        "port": settings.REDIS_SERVER_PORT,
        "db": settings.REDIS_DB,
        "password": password,
        "redis_url": redis_url,
        "key_prefix": settings.REDIS_KEY_PREFIX,
    }


def should_use_redis() -> bool:
    """Sessions live in Redis only when explicitly enabled."""
    return bool(settings.REDIS_ENABLED)
