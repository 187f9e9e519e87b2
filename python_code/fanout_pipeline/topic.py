"""
Fan-out topic: delivers a copy of every published notification to each subscriber.

Subscribers are snapshotted at publish time. Each delivery is attempted
independently with exponential backoff, so one unreachable subscriber never
blocks the others.
"""

import random
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Protocol

from aws_lambda_powertools import Logger

from .config import SERVICE_NAME
from .model import Notification

logger = Logger(service=SERVICE_NAME, child=True)


class Subscriber(Protocol):
    """Anything that accepts envelopes. Raising (typically `DeliveryError`) marks the attempt as failed."""

    def deliver(self, envelope: Dict[str, Any]) -> None:
        ...


@dataclass
class PublishResult:
    message_id: str
    delivered: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class FanOutTopic:
    """
    A publish/subscribe broadcaster.

    Args:
        name: Topic name; also used to build the topic ARN in envelopes.
        max_attempts: Delivery attempts per subscriber before giving up.
        base_delay: First backoff delay in seconds; doubles on each retry.
        sleep: Injectable sleep function for tests.
    """

    def __init__(
        self,
        name: str,
        max_attempts: int = 3,
        base_delay: float = 0.2,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.arn = f"arn:aws:sns:local:000000000000:{name}"
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._sleep = sleep
        self._subscribers: Dict[str, Subscriber] = {}
        self._lock = threading.Lock()

    def subscribe(self, subscriber: Subscriber) -> str:
        subscription_id = f"{self.arn}:{uuid.uuid4()}"
        with self._lock:
            self._subscribers[subscription_id] = subscriber
        logger.info("Subscriber added.", extra={"topic": self.name, "subscription": subscription_id})
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> None:
        with self._lock:
            self._subscribers.pop(subscription_id, None)

    @property
    def subscriptions(self) -> List[str]:
        with self._lock:
            return list(self._subscribers)

    def envelope(self, notification: Notification, message_id: str) -> Dict[str, Any]:
        """Wraps a notification the way SNS wraps messages delivered to SQS."""
        return {
            "Type": "Notification",
            "MessageId": message_id,
            "TopicArn": self.arn,
            "Subject": "Amazon S3 Notification",
            "Message": notification.to_json(),
            "Timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        }

    def publish(self, notification: Notification) -> PublishResult:
        with self._lock:
            targets = list(self._subscribers.items())

        result = PublishResult(message_id=str(uuid.uuid4()))
        envelope = self.envelope(notification, result.message_id)
        for subscription_id, subscriber in targets:
            if self._deliver_with_retry(subscription_id, subscriber, envelope):
                result.delivered.append(subscription_id)
            else:
                result.failed.append(subscription_id)
        return result

    def _deliver_with_retry(self, subscription_id: str, subscriber: Subscriber, envelope: Dict[str, Any]) -> bool:
        for attempt in range(self.max_attempts):
            try:
                subscriber.deliver(dict(envelope))
                return True
            except Exception as e:
                logger.warning(
                    "Delivery to subscriber failed.",
                    extra={"subscription": subscription_id, "attempt": attempt + 1, "error": str(e)},
                )
            if attempt + 1 < self.max_attempts:
                # base_delay * 2**attempt, plus up to half of base_delay in jitter.
                wait_time = (self.base_delay * (2**attempt)) + random.uniform(0.0, self.base_delay / 2)
                self._sleep(wait_time)

        logger.critical(
            f"Delivery failed after {self.max_attempts} attempts.",
            extra={"subscription": subscription_id, "messageId": envelope["MessageId"]},
        )
        return False
