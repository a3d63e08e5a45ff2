"""
RabbitMQ topology per delivery category.

For each category (webhooks, notifications)::

    {prefix}.{category}.exchange  --routing_key-->  {prefix}.{category}       (quorum)
    {prefix}.{category}            --dead-letter-->  {prefix}.{category}.dlx --> {prefix}.{category}.dlq
    {prefix}.{category}.retry      --TTL expiry---->  {prefix}.{category}.exchange

The quorum queue's ``x-delivery-limit`` equals the application's
``max_attempts`` so broker redeliveries and the record attempt counter share
one ceiling.
"""

from __future__ import annotations

from dataclasses import dataclass

from healthlink_events.schemas import DeliveryChannel

CATEGORIES = {
    DeliveryChannel.WEBHOOK: ("webhooks", "webhook.delivery", "webhook.failed"),
    DeliveryChannel.NOTIFICATION: ("notifications", "notification.send", "notification.failed"),
}


@dataclass(frozen=True)
class QueueTopology:
    prefix: str
    category: str
    routing_key: str
    dead_letter_routing_key: str
    max_attempts: int

    @property
    def exchange(self) -> str:
        return f"{self.prefix}.{self.category}.exchange"

    @property
    def queue(self) -> str:
        return f"{self.prefix}.{self.category}"

    @property
    def dead_letter_exchange(self) -> str:
        return f"{self.prefix}.{self.category}.dlx"

    @property
    def dead_letter_queue(self) -> str:
        return f"{self.prefix}.{self.category}.dlq"

    @property
    def retry_queue(self) -> str:
        return f"{self.prefix}.{self.category}.retry"

    def queue_arguments(self) -> dict:
        return {
            "x-queue-type": "quorum",
            "x-delivery-limit": self.max_attempts,
            "x-dead-letter-exchange": self.dead_letter_exchange,
            "x-dead-letter-routing-key": self.dead_letter_routing_key,
        }

    def retry_arguments(self) -> dict:
        return {
            "x-dead-letter-exchange": self.exchange,
            "x-dead-letter-routing-key": self.routing_key,
        }


def topology_for(channel: DeliveryChannel, prefix: str = "healthlink", max_attempts: int = 5) -> QueueTopology:
    category, routing_key, dead_letter_routing_key = CATEGORIES[DeliveryChannel(channel)]
    return QueueTopology(
        prefix=prefix,
        category=category,
        routing_key=routing_key,
        dead_letter_routing_key=dead_letter_routing_key,
        max_attempts=max_attempts,
    )
