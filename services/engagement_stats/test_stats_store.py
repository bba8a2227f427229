"""Unit tests for the persistence collaborators.

The Redis store is tested against a mocked client, covering JSON encoding,
key namespacing and the mapping of Redis failures to PersistenceUnavailable.
"""

import json
import pytest
from unittest.mock import MagicMock, patch

from redis.exceptions import ConnectionError, TimeoutError

from services.engagement_stats.errors import PersistenceUnavailable
from services.engagement_stats.stats_store import (
    InMemoryStatsStore,
    RedisStatsStore,
    bucket_key,
    bucket_prefix,
    counter_key,
)


@pytest.fixture
def redis_store():
    """Create a RedisStatsStore with a mocked Redis client."""
    with patch("services.engagement_stats.stats_store.redis.Redis") as mock_redis_class:
        mock_redis = MagicMock()
        mock_redis_class.return_value = mock_redis

        store = RedisStatsStore(redis_host="localhost", redis_port=6379, key_prefix="test")
        yield store, mock_redis


class TestKeys:
    """Test the key layout."""

    def test_key_helpers(self):
        """Test counter and bucket keys."""
        assert counter_key("alice", "total_views") == "counters:alice:total_views"
        assert bucket_key("alice", "week", "2024-W09") == "buckets:alice:week:2024-W09"
        assert bucket_key("alice", "week", "2024-W09").startswith(bucket_prefix("alice", "week"))


class TestInMemoryStatsStore:
    """Test the in-memory store."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = InMemoryStatsStore()

    def test_get_missing(self):
        """Test reading an absent key."""
        assert self.store.get("counters:alice:total_views") is None

    def test_documents_are_copied(self):
        """Test that callers cannot mutate stored documents."""
        document = {"value": 1, "nested": {"a": 1}}
        self.store.put("k", document)
        document["nested"]["a"] = 99

        read = self.store.get("k")
        read["value"] = 42

        assert self.store.get("k") == {"value": 1, "nested": {"a": 1}}

    def test_scan(self):
        """Test prefix scans."""
        self.store.put("buckets:alice:day:2024-03-01", {})
        self.store.put("buckets:alice:week:2024-W09", {})
        self.store.put("buckets:bob:day:2024-03-01", {})

        assert self.store.scan("buckets:alice:day:") == ["buckets:alice:day:2024-03-01"]
        assert len(self.store) == 3
        assert self.store.ping() is True


class TestRedisStatsStore:
    """Test the Redis-backed store."""

    def test_client_configuration(self):
        """Test that the Redis client is created with decoded responses."""
        with patch("services.engagement_stats.stats_store.redis.Redis") as mock_redis_class:
            RedisStatsStore(redis_host="redis", redis_port=6380, redis_db=2, redis_password="secret")

            kwargs = mock_redis_class.call_args.kwargs
            assert kwargs["host"] == "redis"
            assert kwargs["port"] == 6380
            assert kwargs["db"] == 2
            assert kwargs["password"] == "secret"
            assert kwargs["decode_responses"] is True

    def test_put_serialises_json(self, redis_store):
        """Test that documents are stored as namespaced JSON strings."""
        store, mock_redis = redis_store

        store.put("counters:alice:total_views", {"value": 3, "updated_at": None})

        mock_redis.set.assert_called_once_with(
            "test:counters:alice:total_views", json.dumps({"value": 3, "updated_at": None})
        )

    def test_get_decodes_json(self, redis_store):
        """Test reading a stored document."""
        store, mock_redis = redis_store
        mock_redis.get.return_value = json.dumps({"value": 7})

        assert store.get("counters:alice:total_views") == {"value": 7}
        mock_redis.get.assert_called_once_with("test:counters:alice:total_views")

    def test_get_missing(self, redis_store):
        """Test reading an absent key."""
        store, mock_redis = redis_store
        mock_redis.get.return_value = None

        assert store.get("counters:alice:total_views") is None

    def test_corrupt_document(self, redis_store):
        """Test that undecodable documents surface as PersistenceUnavailable."""
        store, mock_redis = redis_store
        mock_redis.get.return_value = "{not json"

        with pytest.raises(PersistenceUnavailable):
            store.get("counters:alice:total_views")

    @pytest.mark.parametrize("error", [ConnectionError("down"), TimeoutError("slow")])
    def test_redis_errors_are_retryable(self, redis_store, error):
        """Test mapping of Redis failures."""
        store, mock_redis = redis_store
        mock_redis.get.side_effect = error
        mock_redis.set.side_effect = error
        mock_redis.scan_iter.side_effect = error

        with pytest.raises(PersistenceUnavailable) as exc_info:
            store.get("k")
        assert exc_info.value.retryable

        with pytest.raises(PersistenceUnavailable):
            store.put("k", {})
        with pytest.raises(PersistenceUnavailable):
            store.scan("buckets:")

    def test_scan_strips_namespace(self, redis_store):
        """Test that scanned keys come back without the namespace."""
        store, mock_redis = redis_store
        mock_redis.scan_iter.return_value = iter([
            "test:buckets:alice:day:2024-03-01",
            "test:buckets:alice:day:2024-03-02",
        ])

        keys = store.scan("buckets:alice:day:")

        assert keys == ["buckets:alice:day:2024-03-01", "buckets:alice:day:2024-03-02"]
        mock_redis.scan_iter.assert_called_once_with(match="test:buckets:alice:day:*")

    def test_ping(self, redis_store):
        """Test health checks."""
        store, mock_redis = redis_store
        mock_redis.ping.return_value = True
        assert store.ping() is True

        mock_redis.ping.side_effect = ConnectionError("down")
        assert store.ping() is False

    def test_close(self, redis_store):
        """Test closing the connection."""
        store, mock_redis = redis_store
        store.close()
        mock_redis.close.assert_called_once()
