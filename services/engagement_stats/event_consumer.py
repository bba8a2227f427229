"""
Engagement Event Consumer

Reads JSON engagement events from Kafka and applies them to the engine.
Offsets are committed only after a whole batch was applied, so a store outage
leads to redelivery rather than loss (at-least-once).
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import structlog
from kafka import KafkaConsumer

from shared.models import EngagementEvent

from .engine import EngagementStatsEngine
from .errors import PersistenceUnavailable

logger = structlog.get_logger(__name__)


class EngagementEventConsumer:
    """Kafka consumer feeding an EngagementStatsEngine."""

    def __init__(
        self,
        engine: EngagementStatsEngine,
        kafka_bootstrap_servers: str,
        kafka_topic_events: str,
        group_id: str = "engagement-stats",
        retry_backoff_seconds: float = 1.0,
    ):
        self.engine = engine
        self.kafka_bootstrap_servers = kafka_bootstrap_servers
        self.kafka_topic_events = kafka_topic_events
        self.group_id = group_id
        self.retry_backoff_seconds = retry_backoff_seconds

        self.consumer = None
        self.running = False

        # Statistics
        self.events_processed = 0
        self.events_rejected = 0
        self.batches_retried = 0
        self.last_processed_time: Optional[datetime] = None

    def _create_consumer(self) -> KafkaConsumer:
        return KafkaConsumer(
            self.kafka_topic_events,
            bootstrap_servers=self.kafka_bootstrap_servers,
            value_deserializer=lambda x: json.loads(x.decode('utf-8')),
            group_id=self.group_id,
            auto_offset_reset='earliest',
            enable_auto_commit=False
        )

    async def start_processing(self, max_polls: Optional[int] = None) -> None:
        """
        Consume events until stopped.

        Args:
            max_polls: Stop after this many polls (None runs until stop())
        """
        logger.info("Starting engagement event consumer", topic=self.kafka_topic_events)
        self.running = True
        polls = 0

        try:
            self.consumer = self._create_consumer()

            while self.running:
                if max_polls is not None and polls >= max_polls:
                    break
                polls += 1

                message_batch = self.consumer.poll(timeout_ms=1000)
                if not message_batch:
                    await asyncio.sleep(0.1)
                    continue

                if self._process_batch(message_batch):
                    self.consumer.commit()
                else:
                    self.batches_retried += 1
                    await asyncio.sleep(self.retry_backoff_seconds)
                    continue

                await asyncio.sleep(0.01)

        except Exception as e:
            logger.error("Error in engagement event consumer", error=str(e))
            raise
        finally:
            await self._cleanup()

    def _process_batch(self, message_batch: Dict[Any, Any]) -> bool:
        """
        Apply every message of a poll.

        Returns:
            False if a retryable failure occurred; the failing partition is
            rewound to the failed message so it is delivered again
        """
        complete = True
        for topic_partition, messages in message_batch.items():
            for message in messages:
                try:
                    self.process_message(message.value)
                except PersistenceUnavailable as e:
                    logger.warning(
                        "Retryable failure applying event, rewinding partition",
                        error=str(e),
                        partition=getattr(topic_partition, 'partition', None),
                        offset=message.offset,
                    )
                    self.consumer.seek(topic_partition, message.offset)
                    complete = False
                    break
        return complete

    def process_message(self, message_data: Dict[str, Any]) -> bool:
        """
        Parse and apply a single event.

        Returns:
            True if applied, False if the message was malformed and skipped

        Raises:
            PersistenceUnavailable: Retryable engine failure; nothing was applied
        """
        try:
            if not isinstance(message_data, dict):
                raise ValueError(f"Expected a JSON object, got {type(message_data).__name__}")
            event = EngagementEvent.from_dict(message_data)
        except ValueError as e:
            self.events_rejected += 1
            logger.error("Rejected malformed engagement event", error=str(e), message=message_data)
            return False

        self.engine.emit_event(event)

        self.events_processed += 1
        self.last_processed_time = datetime.now(timezone.utc)

        if self.events_processed % 1000 == 0:
            logger.info(
                "Processing progress",
                events_processed=self.events_processed,
                events_rejected=self.events_rejected
            )
        return True

    def stop(self) -> None:
        self.running = False

    async def _cleanup(self) -> None:
        """Cleanup resources."""
        self.running = False
        if self.consumer:
            self.consumer.close()

        logger.info("Engagement event consumer stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get processing statistics."""
        return {
            'running': self.running,
            'events_processed': self.events_processed,
            'events_rejected': self.events_rejected,
            'batches_retried': self.batches_retried,
            'last_processed_time': self.last_processed_time.isoformat() if self.last_processed_time else None,
        }
