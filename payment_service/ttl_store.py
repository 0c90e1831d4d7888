import json
import logging

import redis

logger = logging.getLogger(__name__)


class KeyedTTLStore:
    """Short-lived shared state with explicit expiry, visible to every instance.

    Values are stored as JSON under ``<namespace>:<key>``.
    """

    def __init__(self, client: redis.Redis, namespace: str = "payments"):
        self.client = client
        self.namespace = namespace

    @classmethod
    def from_url(cls, url: str, namespace: str = "payments") -> "KeyedTTLStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), namespace)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def set(self, key: str, value, ttl_seconds: int) -> None:
        self.client.set(self._key(key), json.dumps(value), ex=ttl_seconds)

    def get(self, key: str):
        raw = self.client.get(self._key(key))
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable TTL entry %s", key)
            self.delete(key)
            return None

    def delete(self, key: str) -> None:
        self.client.delete(self._key(key))
