"""
Redis helpers: menu listing cache and request rate limiting.

Every method degrades to a no-op when Redis is unreachable, so the API keeps
serving straight from the database.
"""
import hashlib
import json
import logging
from typing import Optional, Dict, Any, Tuple

import redis
from fastapi import Request

import config
import errors

logger = logging.getLogger(__name__)

MENU_KEY_PREFIX = "menu:"


class RedisClient:
    """Thin wrapper around redis.Redis"""

    def __init__(self, host=None, port=None):
        self.redis_host = host or config.REDIS_HOST
        self.redis_port = port or config.redis_port()

        try:
            self.client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.client.ping()
        except Exception as e:
            logger.warning("Could not connect to Redis at %s:%s: %s", self.redis_host, self.redis_port, e)
            self.client = None

    def is_available(self) -> bool:
        if not self.client:
            return False
        try:
            self.client.ping()
            return True
        except redis.RedisError:
            return False

    # ========== Menu cache ==========

    @staticmethod
    def menu_key(params: Dict[str, Any]) -> str:
        """Cache key for one menu listing query, independent of parameter order."""
        normalized = json.dumps(
            {k: v for k, v in sorted(params.items()) if v is not None},
            default=str,
            sort_keys=True,
        )
        digest = hashlib.sha1(normalized.encode("utf-8")).hexdigest()
        return f"{MENU_KEY_PREFIX}list:{digest}"

    def cache_menu(self, key: str, data: Dict, ttl: int = None) -> bool:
        if not self.is_available():
            return False
        try:
            self.client.setex(key, ttl or config.MENU_CACHE_TTL, json.dumps(data, default=str))
            return True
        except redis.RedisError as e:
            logger.warning("Error caching menu listing: %s", e)
            return False

    def get_cached_menu(self, key: str) -> Optional[Dict]:
        if not self.is_available():
            return None
        try:
            cached = self.client.get(key)
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.warning("Error reading menu listing from cache: %s", e)
        return None

    def invalidate_menu_cache(self) -> bool:
        """Drop every cached menu listing (called on any menu mutation)."""
        if not self.is_available():
            return False
        try:
            keys = self.client.keys(f"{MENU_KEY_PREFIX}*")
            if keys:
                self.client.delete(*keys)
            return True
        except redis.RedisError as e:
            logger.warning("Error invalidating menu cache: %s", e)
            return False

    # ========== Rate Limiting ==========

    def check_rate_limit(self, key: str, max_requests: int = 10, window: int = 60) -> Tuple[bool, int]:
        """
        Count one request against ``key``.
        Returns (allowed, remaining requests in the window).
        """
        if not self.is_available():
            return True, max_requests

        try:
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, window)

            remaining = max(0, max_requests - current)
            allowed = current <= max_requests

            return allowed, remaining
        except redis.RedisError as e:
            logger.warning("Error checking rate limit: %s", e)
            return True, max_requests

    def get_cache_info(self) -> Dict[str, Any]:
        if not self.is_available():
            return {"status": "unavailable"}

        try:
            return {
                "status": "available",
                "menu_listings_cached": len(self.client.keys(f"{MENU_KEY_PREFIX}*")),
                "rate_limit_keys": len(self.client.keys("rate_limit:*")),
            }
        except redis.RedisError as e:
            return {"status": "error", "error": str(e)}


redis_client = RedisClient()


def rate_limit(max_requests: int = 10, window: int = 60, key_prefix: str = "rate_limit"):
    """
    FastAPI dependency factory limiting requests per client host.

    Usage: ``Depends(rate_limit(5, 60, "login"))``.
    """
    def dependency(request: Request):
        client_host = request.client.host if request.client else "unknown"
        rate_key = f"rate_limit:{key_prefix}:{client_host}"

        allowed, remaining = redis_client.check_rate_limit(rate_key, max_requests, window)
        if not allowed:
            raise errors.RateLimited(window)
        return remaining

    return dependency
