import redis
import json
import logging
from typing import Optional, Any

logger = logging.getLogger(__name__)


class RedisService:
    """
    JSON cache for derived metrics. Without a reachable Redis every call is
    a no-op, so callers never have to care whether caching is on.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self.redis_url = redis_url
        self.client = None
        if self.redis_url:
            try:
                self.client = redis.from_url(self.redis_url, decode_responses=True)
                # Test connection
                self.client.ping()
                logger.info("Connected to Redis for metrics caching.")
            except Exception as e:
                logger.warning(f"Failed to connect to Redis: {e}. Caching disabled.")
                self.client = None
        else:
            logger.info("REDIS_URL not set. Caching disabled.")

    def get(self, key: str) -> Optional[Any]:
        if not self.client:
            return None
        try:
            data = self.client.get(key)
            if data:
                return json.loads(data)
            return None
        except Exception as e:
            logger.warning(f"Redis get error: {e}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: int = 60):
        if not self.client:
            return
        try:
            # Handle Pydantic models & lists of them
            if hasattr(value, "model_dump_json"):
                serialized = value.model_dump_json()
            else:
                serialized = json.dumps(
                    value, default=lambda o: o.model_dump(mode="json") if hasattr(o, "model_dump") else str(o)
                )
            self.client.setex(key, ttl_seconds, serialized)
        except Exception as e:
            logger.warning(f"Redis set error: {e}")

    def delete(self, key: str):
        if not self.client:
            return
        try:
            self.client.delete(key)
        except Exception as e:
            logger.warning(f"Redis delete error: {e}")
