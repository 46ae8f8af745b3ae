"""Read-through cache of user assignments using Redis.

The store stays the source of truth. A miss, or any Redis failure,
falls through to the store; the cache never creates assignments.
"""
import redis
from typing import Optional


class AssignmentCache:
    """Redis-backed (experiment_id, user_id) -> variant_id cache."""

    def __init__(self, redis_client: redis.Redis, ttl: int = 86400):
        self.redis = redis_client
        # Assignments never change, so expiry only bounds memory use
        self.ttl = ttl

    def _get_key(self, experiment_id: str, user_id: str) -> str:
        """Get Redis key for a user's assignment."""
        return f"abtest:assignment:{experiment_id}:{user_id}"

    def get(self, experiment_id: str, user_id: str) -> Optional[str]:
        """Return the cached variant id, or None on a miss."""
        value = self.redis.get(self._get_key(experiment_id, user_id))
        if value is None:
            return None
        return value.decode("utf-8") if isinstance(value, bytes) else str(value)

    def set(self, experiment_id: str, user_id: str, variant_id: str) -> None:
        """Cache a variant id for a user."""
        self.redis.set(self._get_key(experiment_id, user_id), variant_id, ex=self.ttl)

    def invalidate_experiment(self, experiment_id: str) -> int:
        """
        Drop every cached assignment of an experiment.

        Returns:
            Number of keys removed
        """
        pattern = f"abtest:assignment:{experiment_id}:*"
        removed = 0
        for redis_key in self.redis.scan_iter(match=pattern):
            removed += self.redis.delete(redis_key) or 0
        return removed


def get_assignment_cache(redis_url: str, ttl: int = 86400) -> Optional[AssignmentCache]:
    """Build a cache for the configured Redis URL, or None when caching is disabled."""
    if not redis_url:
        return None
    return AssignmentCache(redis.from_url(redis_url), ttl=ttl)
