"""Tests for queue naming and arguments."""

from healthlink_events.messaging.topology import topology_for
from healthlink_events.schemas import DeliveryChannel


def test_webhook_names():
    t = topology_for(DeliveryChannel.WEBHOOK)
    assert t.exchange == "healthlink.webhooks.exchange"
    assert t.queue == "healthlink.webhooks"
    assert t.routing_key == "webhook.delivery"
    assert t.dead_letter_exchange == "healthlink.webhooks.dlx"
    assert t.dead_letter_queue == "healthlink.webhooks.dlq"
    assert t.dead_letter_routing_key == "webhook.failed"
    assert t.retry_queue == "healthlink.webhooks.retry"


def test_notification_names_use_prefix():
    t = topology_for(DeliveryChannel.NOTIFICATION, prefix="staging")
    assert t.queue == "staging.notifications"
    assert t.routing_key == "notification.send"
    assert t.dead_letter_routing_key == "notification.failed"


def test_main_queue_is_quorum_with_delivery_limit():
    args = topology_for(DeliveryChannel.WEBHOOK, max_attempts=7).queue_arguments()
    assert args == {
        "x-queue-type": "quorum",
        "x-delivery-limit": 7,
        "x-dead-letter-exchange": "healthlink.webhooks.dlx",
        "x-dead-letter-routing-key": "webhook.failed",
    }


def test_retry_queue_expires_back_into_main_exchange():
    t = topology_for(DeliveryChannel.NOTIFICATION)
    assert t.retry_arguments() == {
        "x-dead-letter-exchange": "healthlink.notifications.exchange",
        "x-dead-letter-routing-key": "notification.send",
    }
