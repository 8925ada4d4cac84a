"""
AMQP transport built on kombu.

Declares the topic exchange and the durable priority queue the processor
consumes from, then exposes an asyncio-friendly surface:

- next_delivery(): waits for one message (blocking kombu calls run in a thread)
- publish(): JSON publish with priority and headers
- ack() / nack(): settle a delivery

Only one kombu call is ever in flight at a time; the consumer loop is
sequential, so the connection is never shared across threads concurrently.

Usage:
    broker = KombuBroker(settings)
    await broker.connect()
    delivery = await broker.next_delivery(timeout=1.0)
"""

import asyncio
import logging
import socket
from collections import deque
from typing import Any, Deque, Dict, Optional

from kombu import Connection, Consumer, Exchange, Producer, Queue

from action_processor.config.settings import ProcessorSettings
from action_processor.messaging.broker import Delivery

logger = logging.getLogger(__name__)


class KombuBroker:
    """Consumer and publisher on a single AMQP connection."""

    def __init__(self, settings: ProcessorSettings, connection: Optional[Connection] = None):
        self.settings = settings
        self.exchange = Exchange(settings.amqp_exchange, type="topic", durable=True)
        self.queue = Queue(
            settings.amqp_queue,
            exchange=self.exchange,
            routing_key=settings.amqp_binding_key,
            durable=True,
            queue_arguments={"x-max-priority": settings.amqp_max_priority},
        )
        self._connection = connection
        self._channel = None
        self._producer: Optional[Producer] = None
        self._consumer: Optional[Consumer] = None
        self._pending: Deque[Delivery] = deque()

    async def connect(self) -> None:
        await asyncio.to_thread(self._connect)

    def _connect(self) -> None:
        if self._connection is None:
            self._connection = Connection(
                self.settings.amqp_url, heartbeat=self.settings.amqp_heartbeat
            )
        self._connection.ensure_connection(max_retries=3)
        self._channel = self._connection.channel()

        self._producer = Producer(self._channel, exchange=self.exchange, serializer="json")
        self._consumer = Consumer(
            self._channel,
            queues=[self.queue],
            on_message=self._on_message,
            accept=["json", "text/plain", "application/octet-stream"],
        )
        self._consumer.qos(prefetch_count=self.settings.amqp_prefetch)
        self._consumer.consume()

        logger.info(
            "Connected to broker",
            extra={
                "exchange": self.settings.amqp_exchange,
                "queue": self.settings.amqp_queue,
                "binding_key": self.settings.amqp_binding_key,
                "prefetch": self.settings.amqp_prefetch,
            },
        )

    def _on_message(self, message) -> None:
        properties = message.properties or {}
        self._pending.append(
            Delivery(
                routing_key=message.delivery_info.get("routing_key", ""),
                body=message.body if isinstance(message.body, bytes) else str(message.body).encode("utf-8"),
                priority=properties.get("priority") or 0,
                headers=dict(message.headers or {}),
                delivery_tag=message.delivery_tag,
                message=message,
            )
        )

    def _drain(self, timeout: float) -> None:
        try:
            self._connection.drain_events(timeout=timeout)
        except socket.timeout:
            self._connection.heartbeat_check()

    async def next_delivery(self, timeout: float = 1.0) -> Optional[Delivery]:
        """Next delivery, or None when nothing arrived within the timeout."""
        if not self._pending:
            await asyncio.to_thread(self._drain, timeout)
        return self._pending.popleft() if self._pending else None

    async def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        priority: Optional[int] = None,
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        await asyncio.to_thread(
            self._producer.publish,
            payload,
            routing_key=routing_key,
            priority=priority,
            headers=headers or {},
            retry=True,
            declare=[self.exchange],
        )
        logger.debug("Published message", extra={"routing_key": routing_key, "priority": priority})

    async def ack(self, delivery: Delivery) -> None:
        await asyncio.to_thread(delivery.message.ack)

    async def nack(self, delivery: Delivery, requeue: bool = True) -> None:
        await asyncio.to_thread(delivery.message.reject, requeue=requeue)

    async def close(self) -> None:
        if self._consumer is not None:
            await asyncio.to_thread(self._consumer.cancel)
        if self._connection is not None:
            await asyncio.to_thread(self._connection.release)
            logger.info("Broker connection closed")
        self._consumer = None
        self._connection = None
