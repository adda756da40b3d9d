"""
Redis client utilities for device rate limiting
"""
import logging
import redis
from typing import Dict, Any
from datetime import datetime
from .settings import settings

logger = logging.getLogger(__name__)

class RedisClient:
    """Redis client wrapper with utility methods"""

    def __init__(self, url: str = None):
        self.client = redis.Redis.from_url(url or settings.redis_url, decode_responses=True,
                                           socket_connect_timeout=1, socket_timeout=1)

    def ping(self) -> bool:
        """Check Redis connectivity"""
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False

    # Rate Limiting
    def check_rate_limit(self, caller_id: str, endpoint: str, max_requests: int, window_seconds: int) -> Dict[str, Any]:
        """Fixed-window counter for a caller/endpoint combination"""
        try:
            key = f"rate_limit:{caller_id}:{endpoint}"
            current_time = datetime.now()
            window_start = int(current_time.timestamp()) // window_seconds * window_seconds
            current_key = f"{key}:{window_start}"
            reset_time = window_start + window_seconds

            current_count = self.client.get(current_key)
            current_count = int(current_count) if current_count else 0

            if current_count >= max_requests:
                return {
                    "allowed": False,
                    "count": current_count,
                    "remaining": 0,
                    "reset_time": reset_time,
                    "retry_after": reset_time - int(current_time.timestamp())
                }

            # Increment the counter atomically
            pipe = self.client.pipeline()
            pipe.incr(current_key)
            pipe.expire(current_key, window_seconds)
            new_count = pipe.execute()[0]

            return {
                "allowed": new_count <= max_requests,
                "count": new_count,
                "remaining": max(0, max_requests - new_count),
                "reset_time": reset_time,
                "retry_after": reset_time - int(current_time.timestamp()) if new_count > max_requests else 0
            }

        except redis.RedisError as e:
            # Fail open - a Redis outage must not stop devices from returning change
            logger.warning(f"🚨 Rate limit check failed, allowing request: {e}")
            return {
                "allowed": True,
                "count": 0,
                "remaining": max_requests,
                "reset_time": 0,
                "retry_after": 0
            }

# Global Redis client instance
redis_client = RedisClient()
