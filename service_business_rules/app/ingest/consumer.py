"""
Kafka consumer for the change-data stream.
"""

import asyncio
import functools
import json
from typing import Any, Optional

import kafka
from kafka.errors import KafkaError
from pydantic import ValidationError as PydanticValidationError

from shared.errors import RuleEngineException, StoreError
from shared.logging import clear_context, get_logger
from ..engine.orchestrator import RuleExecutionOrchestrator
from ..rules.models import ChangeEventRequest, EventProcessingReport


class ChangeEventConsumer:
    """Feeds change events from Kafka into the orchestrator.

    Offsets are committed only after a batch is fully processed. When a store
    is unavailable or processing fails unexpectedly, the consumer seeks back
    to the failing message and backs off, so the event is redelivered
    (at-least-once).
    """

    def __init__(self,
                 bootstrap_servers: str,
                 group_id: str,
                 topic: str,
                 orchestrator: RuleExecutionOrchestrator,
                 retry_backoff: float = 5.0,
                 consumer: Optional[Any] = None):
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.topic = topic
        self.orchestrator = orchestrator
        self.retry_backoff = retry_backoff
        self.logger = get_logger("business_rules.ingest.consumer")
        self.consumer = consumer
        self.running = False
        self._consumer_task: Optional[asyncio.Task] = None

    @staticmethod
    async def _await_if_needed(result):
        if asyncio.iscoroutine(result):
            return await result
        return result

    async def start(self, start_loop: bool = True):
        """Create the Kafka consumer and subscribe to the change topic."""
        try:
            if self.consumer is None:
                self.consumer = kafka.KafkaConsumer(
                    bootstrap_servers=self.bootstrap_servers,
                    group_id=self.group_id,
                    value_deserializer=lambda x: x,
                    key_deserializer=lambda x: x,
                    auto_offset_reset="earliest",
                    enable_auto_commit=False,
                    max_poll_records=100,
                    session_timeout_ms=30000,
                    heartbeat_interval_ms=10000
                )
            await self._await_if_needed(self.consumer.subscribe([self.topic]))
        except KafkaError as e:
            self.logger.error("Failed to start Kafka consumer", error=str(e))
            raise RuleEngineException("KAFKA_CONSUMER_START_FAILED", str(e))

        self.running = True
        if start_loop:
            self._consumer_task = asyncio.create_task(self._consume_loop())
        self.logger.info("Kafka consumer started", group_id=self.group_id, topic=self.topic)

    async def stop(self):
        """Stop the loop and close the consumer."""
        self.running = False
        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        if self.consumer:
            await self._await_if_needed(self.consumer.close())
            self.logger.info("Kafka consumer stopped")

    async def handle_message(self, message) -> Optional[EventProcessingReport]:
        """Decode one message and process it. Undecodable messages are skipped.

        StoreError propagates so the caller can redeliver.
        """
        try:
            payload = json.loads(message.value)
            event = ChangeEventRequest.model_validate(payload).to_event()
        except (ValueError, TypeError, PydanticValidationError) as e:
            self.logger.error(
                "Skipping undecodable change event",
                topic=message.topic,
                partition=message.partition,
                offset=message.offset,
                error=str(e)
            )
            return None

        try:
            return await self.orchestrator.process_event(event)
        finally:
            clear_context()

    async def process_batch(self, message_batch) -> bool:
        """Process one poll result; False when the batch must be redelivered."""
        partitions = list(message_batch.items())
        for position, (_, messages) in enumerate(partitions):
            for message in messages:
                try:
                    await self.handle_message(message)
                except StoreError as e:
                    self.logger.warning(
                        "Store unavailable, event will be redelivered",
                        partition=message.partition,
                        offset=message.offset,
                        error=e.message
                    )
                    await self._rewind_batch(partitions, position, message.offset)
                    return False
                except Exception as e:
                    self.logger.exception(
                        "Unexpected error processing change event, event will be redelivered",
                        partition=message.partition,
                        offset=message.offset,
                        error=str(e)
                    )
                    await self._rewind_batch(partitions, position, message.offset)
                    return False

        await self._await_if_needed(self.consumer.commit())
        return True

    async def _rewind_batch(self, partitions, position: int, offset: int):
        """Seek the failing partition to the failing offset and later partitions to their first message."""
        await self._rewind(partitions[position][0], offset)
        for later_partition, later_messages in partitions[position + 1:]:
            if later_messages:
                await self._rewind(later_partition, later_messages[0].offset)

    async def _rewind(self, topic_partition, offset: int):
        await self._await_if_needed(self.consumer.seek(topic_partition, offset))

    async def _consume_loop(self):
        """Main consumption loop."""
        loop = asyncio.get_running_loop()
        while self.running:
            try:
                message_batch = await loop.run_in_executor(
                    None, functools.partial(self.consumer.poll, timeout_ms=1000)
                )
                if not message_batch:
                    continue

                if not await self.process_batch(message_batch):
                    await asyncio.sleep(self.retry_backoff)

            except KafkaError as e:
                self.logger.error("Kafka error in consume loop", error=str(e))
                await asyncio.sleep(self.retry_backoff)

            except asyncio.CancelledError:
                break

            except Exception as e:
                self.logger.error("Unexpected error in consume loop", error=str(e))
                await asyncio.sleep(self.retry_backoff)
