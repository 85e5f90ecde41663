"""Delivery of reconciliation outcomes to users and other services."""

from typing import Protocol

from confluent_kafka import KafkaException, Producer
from logging_utils.config import get_kafka_logger

from .logger import logger
from .schemas import ReconciliationNotification

kafka_logger = get_kafka_logger("reconciler-service")


class Notifier(Protocol):
    """Protocol defining how reconciliation outcomes are surfaced."""

    def send(self, notification: ReconciliationNotification) -> bool:
        """Send a notification.

        Returns:
            bool: True if the notification was handed off successfully
        """
        ...


class LogNotifier:
    """Notifier that only writes outcomes to the service log."""

    def __init__(self):
        self.sent: list[ReconciliationNotification] = []

    def send(self, notification: ReconciliationNotification) -> bool:
        level = "WARNING" if notification.priority == "high" else "INFO"
        logger.log(
            level,
            f"[{notification.type}] {notification.subject}: {notification.message} | "
            f"customer_id={notification.customer_id} | saga_id={notification.saga_id}",
        )
        self.sent.append(notification)
        return True


class KafkaNotifier:
    """Publishes notifications as JSON messages keyed by customer id.

    Attributes:
        topic: Kafka topic receiving the notifications.
    """

    def __init__(self, bootstrap_servers: str, topic: str = "reconciliation.events"):
        self.topic = topic
        self._producer = Producer(
            {
                "bootstrap.servers": bootstrap_servers,
                "client.id": "reconciler-service",
                "message.timeout.ms": 5000,
            }
        )

    @property
    def producer(self) -> Producer:
        return self._producer

    def _delivery_callback(self, err, msg) -> None:
        if err:
            kafka_logger.error(f"Notification delivery failed: {err} | topic={msg.topic()} | key={msg.key()}")
        else:
            kafka_logger.debug(f"Notification delivered to {msg.topic()} [p:{msg.partition()}]")

    def send(self, notification: ReconciliationNotification) -> bool:
        try:
            self._producer.produce(
                topic=self.topic,
                key=notification.customer_id.encode("utf-8"),
                value=notification.model_dump_json(),
                on_delivery=self._delivery_callback,
            )
            self._producer.poll(0)
            return True
        except BufferError:
            kafka_logger.warning("Producer buffer full, flushing...")
            self._producer.flush()
            return False
        except KafkaException as exc:
            kafka_logger.error(f"Failed to publish notification {notification.notification_id}: {exc}")
            return False

    def close(self, timeout: float = 10.0) -> None:
        remaining = self._producer.flush(timeout)
        if remaining > 0:
            kafka_logger.warning(f"{remaining} notifications still pending delivery")
