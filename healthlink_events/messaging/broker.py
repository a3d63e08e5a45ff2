"""
Message broker adapters for delivery queues.

``RabbitBroker`` is the production adapter (aio-pika). ``InMemoryBroker``
keeps the same contract in-process for tests and local development.

Handlers return an ``Outcome``. ``ACK`` removes the message, ``REJECT``
dead-letters it. An exception escaping the handler is treated as
unexpected: the message is requeued and the broker delivery limit bounds the
number of such redeliveries.
"""

from __future__ import annotations

import abc
import asyncio
import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import aio_pika
import structlog
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractIncomingMessage, AbstractRobustConnection
from pydantic import ValidationError

from healthlink_events.messaging.topology import QueueTopology, topology_for
from healthlink_events.schemas import DeliveryChannel, DeliveryMessage

log = structlog.get_logger()


class Outcome(enum.Enum):
    ACK = "ack"
    REJECT = "reject"


Handler = Callable[[DeliveryMessage], Awaitable[Outcome]]


class MessageBroker(abc.ABC):
    async def start(self) -> None:
        """Open connections and declare topology."""

    async def close(self) -> None:
        """Release connections and stop consumers."""

    @abc.abstractmethod
    async def publish(self, message: DeliveryMessage, delay: float = 0.0) -> None:
        """Enqueue ``message``; with ``delay`` > 0 it becomes visible after that many seconds."""

    @abc.abstractmethod
    async def consume(self, channel: DeliveryChannel, handler: Handler, concurrency: int) -> None:
        """Start consuming ``channel`` with at most ``concurrency`` handlers in flight."""


# ---------------------------------------------------------------------------
# RabbitMQ
# ---------------------------------------------------------------------------


class RabbitBroker(MessageBroker):
    def __init__(self, url: str, *, prefix: str = "healthlink", max_attempts: int = 5):
        self._url = url
        self._topologies = {
            channel: topology_for(channel, prefix, max_attempts) for channel in DeliveryChannel
        }
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchanges: dict[DeliveryChannel, AbstractExchange] = {}
        self._consumer_channels: list[AbstractChannel] = []

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    def topology(self, channel: DeliveryChannel) -> QueueTopology:
        return self._topologies[DeliveryChannel(channel)]

    async def start(self) -> None:
        if self._connection is not None:
            return
        self._connection = await aio_pika.connect_robust(self._url)
        self._channel = await self._connection.channel(publisher_confirms=True)
        for channel, topology in self._topologies.items():
            self._exchanges[channel] = await self._declare(self._channel, topology)
        log.info("broker.connected", queues=[t.queue for t in self._topologies.values()])

    async def _declare(self, channel: AbstractChannel, topology: QueueTopology) -> AbstractExchange:
        exchange = await channel.declare_exchange(
            topology.exchange, aio_pika.ExchangeType.DIRECT, durable=True
        )
        dlx = await channel.declare_exchange(
            topology.dead_letter_exchange, aio_pika.ExchangeType.DIRECT, durable=True
        )

        queue = await channel.declare_queue(
            topology.queue, durable=True, arguments=topology.queue_arguments()
        )
        await queue.bind(exchange, routing_key=topology.routing_key)

        dlq = await channel.declare_queue(topology.dead_letter_queue, durable=True)
        await dlq.bind(dlx, routing_key=topology.dead_letter_routing_key)

        await channel.declare_queue(
            topology.retry_queue, durable=True, arguments=topology.retry_arguments()
        )
        return exchange

    async def close(self) -> None:
        for channel in self._consumer_channels:
            await channel.close()
        self._consumer_channels.clear()
        if self._connection is not None:
            await self._connection.close()
        self._connection = None
        self._channel = None
        self._exchanges.clear()
        log.info("broker.closed")

    async def publish(self, message: DeliveryMessage, delay: float = 0.0) -> None:
        if self._channel is None:
            raise RuntimeError("broker is not started")

        topology = self.topology(message.channel)
        amqp_message = aio_pika.Message(
            body=message.model_dump_json().encode(),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=f"{message.event_id}:{message.attempt}",
            headers={"x-attempt": message.attempt, "x-event-type": message.event_type.value},
            expiration=delay if delay > 0 else None,
        )
        if delay > 0:
            # Parked in the retry queue until the per-message TTL expires.
            await self._channel.default_exchange.publish(amqp_message, routing_key=topology.retry_queue)
        else:
            await self._exchanges[message.channel].publish(amqp_message, routing_key=topology.routing_key)

    async def consume(self, channel: DeliveryChannel, handler: Handler, concurrency: int) -> None:
        if self._connection is None:
            raise RuntimeError("broker is not started")

        topology = self.topology(channel)
        consumer_channel = await self._connection.channel()
        await consumer_channel.set_qos(prefetch_count=concurrency)
        self._consumer_channels.append(consumer_channel)

        queue = await consumer_channel.declare_queue(
            topology.queue, durable=True, arguments=topology.queue_arguments()
        )
        semaphore = asyncio.Semaphore(concurrency)

        async def on_message(incoming: AbstractIncomingMessage) -> None:
            async with semaphore:
                await self._dispatch(incoming, handler)

        await queue.consume(on_message)
        log.info("broker.consuming", queue=topology.queue, concurrency=concurrency)

    async def _dispatch(self, incoming: AbstractIncomingMessage, handler: Handler) -> None:
        try:
            message = DeliveryMessage.model_validate_json(incoming.body)
        except ValidationError as exc:
            log.error("broker.malformed_message", message_id=incoming.message_id, error=str(exc))
            await incoming.reject(requeue=False)
            return

        try:
            outcome = await handler(message)
        except Exception:
            log.exception("broker.handler_failed", event_id=str(message.event_id), attempt=message.attempt)
            await incoming.nack(requeue=True)
            return

        if outcome is Outcome.ACK:
            await incoming.ack()
        else:
            await incoming.reject(requeue=False)


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PublishedMessage:
    message: DeliveryMessage
    delay: float


class InMemoryBroker(MessageBroker):
    """
    Process-local broker.

    Every publish is recorded in ``published``; rejected messages land in
    ``dead_letters``. Delayed messages become visible once the delay elapses.
    ``drain`` processes whatever is currently visible without starting
    consumer tasks.
    """

    def __init__(self, *, max_attempts: int = 5, maxsize: int = 1000):
        self.max_attempts = max_attempts
        self.published: list[PublishedMessage] = []
        self.dead_letters: list[DeliveryMessage] = []
        self._queues: dict[DeliveryChannel, asyncio.Queue[DeliveryMessage]] = {
            channel: asyncio.Queue(maxsize=maxsize) for channel in DeliveryChannel
        }
        self._redeliveries: dict[tuple, int] = {}
        self._timers: list[asyncio.TimerHandle] = []
        self._tasks: list[asyncio.Task] = []

    def pending(self, channel: DeliveryChannel) -> int:
        return self._queues[DeliveryChannel(channel)].qsize()

    async def publish(self, message: DeliveryMessage, delay: float = 0.0) -> None:
        self.published.append(PublishedMessage(message, delay))
        queue = self._queues[message.channel]
        if delay > 0:
            loop = asyncio.get_running_loop()
            self._timers.append(loop.call_later(delay, queue.put_nowait, message))
        else:
            await queue.put(message)

    async def consume(self, channel: DeliveryChannel, handler: Handler, concurrency: int) -> None:
        queue = self._queues[DeliveryChannel(channel)]

        async def _consumer() -> None:
            while True:
                message = await queue.get()
                try:
                    await self._dispatch(message, handler)
                finally:
                    queue.task_done()

        for _ in range(concurrency):
            self._tasks.append(asyncio.create_task(_consumer()))

    async def drain(self, channel: DeliveryChannel, handler: Handler) -> int:
        """Handle every visible message on ``channel``; returns how many were handled."""
        queue = self._queues[DeliveryChannel(channel)]
        handled = 0
        while not queue.empty():
            message = queue.get_nowait()
            await self._dispatch(message, handler)
            queue.task_done()
            handled += 1
        return handled

    async def _dispatch(self, message: DeliveryMessage, handler: Handler) -> None:
        try:
            outcome = await handler(message)
        except Exception:
            log.exception("broker.handler_failed", event_id=str(message.event_id), attempt=message.attempt)
            key = (message.event_id, message.attempt)
            self._redeliveries[key] = self._redeliveries.get(key, 0) + 1
            if self._redeliveries[key] >= self.max_attempts:
                self.dead_letters.append(message)
            else:
                self._queues[message.channel].put_nowait(message)
            return

        if outcome is Outcome.REJECT:
            self.dead_letters.append(message)

    async def close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
