"""
Kafka consumer feeding invalidation events to the handler.
"""

import asyncio
import functools
from dataclasses import dataclass
from typing import Dict, List, Optional

import kafka
from kafka.errors import KafkaError

from shared.logging import get_logger
from shared.errors import AccessLayerException
from .handler import InvalidationHandler


@dataclass
class KafkaMessage:
    """Kafka message wrapper."""
    topic: str
    partition: int
    offset: int
    key: Optional[bytes]
    value: bytes


class InvalidationConsumer:
    """Polls the progress, rule and enrollment topics on a background task."""

    def __init__(self, bootstrap_servers: str, group_id: str, handler: InvalidationHandler,
                 topics: Dict[str, str]):
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.handler = handler
        # topic -> event kind
        self.topics = topics
        self.logger = get_logger("gating.kafka.consumer")
        self.consumer: Optional[kafka.KafkaConsumer] = None
        self.running = False
        self._consumer_task: Optional[asyncio.Task] = None

    async def start(self, start_loop: bool = True):
        """Start the Kafka consumer."""
        try:
            self.consumer = kafka.KafkaConsumer(
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                value_deserializer=lambda x: x,
                key_deserializer=lambda x: x,
                auto_offset_reset="latest",
                enable_auto_commit=True,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000
            )
            self.consumer.subscribe(list(self.topics))

            self.running = True
            if start_loop:
                self._consumer_task = asyncio.create_task(self._consume_loop())
            self.logger.info("Kafka consumer started", group_id=self.group_id, topics=list(self.topics))

        except Exception as e:
            self.logger.error("Failed to start Kafka consumer", error=str(e))
            raise AccessLayerException("KAFKA_CONSUMER_START_FAILED", str(e))

    async def stop(self):
        """Stop the Kafka consumer."""
        self.running = False
        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass

        if self.consumer:
            self.consumer.close()
            self.logger.info("Kafka consumer stopped")

    async def process(self, message: KafkaMessage) -> int:
        """Apply one message; malformed payloads are logged and skipped."""
        kind = self.topics.get(message.topic)
        if kind is None:
            return 0
        try:
            return await self.handler.handle(kind, message.value)
        except AccessLayerException as e:
            self.logger.warning(
                "Skipping invalidation event",
                topic=message.topic,
                offset=message.offset,
                error=e.message
            )
            return 0

    async def _poll(self) -> Dict:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(self.consumer.poll, timeout_ms=1000))

    async def _consume_loop(self):
        """Main consumption loop."""
        while self.running:
            try:
                message_batch = await self._poll()
                if not message_batch:
                    await asyncio.sleep(0)
                    continue

                for messages in message_batch.values():
                    for message in messages:
                        await self.process(KafkaMessage(
                            topic=message.topic,
                            partition=message.partition,
                            offset=message.offset,
                            key=message.key,
                            value=message.value
                        ))

            except KafkaError as e:
                self.logger.error("Kafka error in consume loop", error=str(e))
                await asyncio.sleep(5)

            except asyncio.CancelledError:
                break

            except Exception as e:
                self.logger.error("Unexpected error in consume loop", error=str(e))
                await asyncio.sleep(1)

    def get_subscribed_topics(self) -> List[str]:
        return list(self.topics)
