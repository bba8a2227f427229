"""Persistence collaborators for the engagement statistics engine.

The engine never assumes a storage engine. It only needs atomic get/put of a
single JSON-compatible document per key and a prefix scan. This module
defines that contract and ships an in-memory store and a Redis-backed store.

Key layout:
    counters:{user_id}:{field}
    buckets:{user_id}:{resolution}:{period_key}
"""

import copy
import json
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol

import redis
from redis.exceptions import ConnectionError, TimeoutError

from .errors import PersistenceUnavailable


logger = logging.getLogger(__name__)

COUNTER_KEY_PREFIX = "counters"
BUCKET_KEY_PREFIX = "buckets"


def counter_key(user_id: str, field: str) -> str:
    return f"{COUNTER_KEY_PREFIX}:{user_id}:{field}"


def bucket_key(user_id: str, resolution: str, period_key: str) -> str:
    return f"{BUCKET_KEY_PREFIX}:{user_id}:{resolution}:{period_key}"


def bucket_prefix(user_id: str, resolution: str) -> str:
    return f"{BUCKET_KEY_PREFIX}:{user_id}:{resolution}:"


class StatsStore(Protocol):
    """Storage contract: atomic single-key documents."""

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a copy of the document at ``key``, or None."""
        ...

    def put(self, key: str, document: Dict[str, Any]) -> None:
        """Atomically replace the document at ``key``."""
        ...

    def scan(self, prefix: str) -> List[str]:
        """Keys starting with ``prefix``, in no particular order."""
        ...

    def ping(self) -> bool:
        """True if the backend is reachable."""
        ...


class InMemoryStatsStore:
    """Thread-safe in-process store. Documents are deep-copied on the way in and out."""

    def __init__(self) -> None:
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._documents.get(key)
            return copy.deepcopy(document) if document is not None else None

    def put(self, key: str, document: Dict[str, Any]) -> None:
        with self._lock:
            self._documents[key] = copy.deepcopy(document)

    def scan(self, prefix: str) -> List[str]:
        with self._lock:
            return [key for key in self._documents if key.startswith(prefix)]

    def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._documents)


class RedisStatsStore:
    """Redis-backed store keeping each document as a JSON string.

    Attributes:
        redis_client: Redis client instance
        key_prefix: Namespace prepended to every key
    """

    def __init__(
        self,
        redis_host: str = "localhost",
        redis_port: int = 6379,
        redis_db: int = 0,
        redis_password: Optional[str] = None,
        key_prefix: str = "engagement",
        socket_timeout: float = 5.0,
        socket_connect_timeout: float = 5.0,
    ) -> None:
        """Initialize the Redis store.

        Args:
            redis_host: Redis server hostname
            redis_port: Redis server port
            redis_db: Redis database number
            redis_password: Optional Redis password
            key_prefix: Namespace prepended to every key
            socket_timeout: Socket timeout in seconds
            socket_connect_timeout: Socket connection timeout in seconds
        """
        self.redis_client = redis.Redis(
            host=redis_host,
            port=redis_port,
            db=redis_db,
            password=redis_password,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_connect_timeout,
            decode_responses=True,
        )
        self.key_prefix = key_prefix

    def _namespaced(self, key: str) -> str:
        return f"{self.key_prefix}:{key}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            cached_data = self.redis_client.get(self._namespaced(key))
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to read {key} from Redis: {e}")
            raise PersistenceUnavailable(f"Redis read failed for {key}: {e}") from e

        if not cached_data:
            return None

        try:
            return json.loads(cached_data)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode document {key}: {e}")
            raise PersistenceUnavailable(f"Corrupt document at {key}") from e

    def put(self, key: str, document: Dict[str, Any]) -> None:
        try:
            self.redis_client.set(self._namespaced(key), json.dumps(document))
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to write {key} to Redis: {e}")
            raise PersistenceUnavailable(f"Redis write failed for {key}: {e}") from e

    def scan(self, prefix: str) -> List[str]:
        namespace = f"{self.key_prefix}:"
        try:
            keys = self.redis_client.scan_iter(match=f"{self._namespaced(prefix)}*")
            return [key[len(namespace):] for key in keys]
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Failed to scan {prefix} in Redis: {e}")
            raise PersistenceUnavailable(f"Redis scan failed for {prefix}: {e}") from e

    def ping(self) -> bool:
        """Check if Redis connection is healthy."""
        try:
            return bool(self.redis_client.ping())
        except (ConnectionError, TimeoutError) as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    def close(self) -> None:
        """Close the Redis connection."""
        self.redis_client.close()
