"""
Object storage that emits creation notifications.

`ObjectStore` is an in-memory bucket store. Each bucket can carry suffix
notification rules; storing an object whose key ends with one of the rule
suffixes publishes exactly one `Notification` to the rule's topic.
"""

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from aws_lambda_powertools import Logger

from .config import SERVICE_NAME
from .model import Notification, ObjectRef
from .topic import FanOutTopic

logger = Logger(service=SERVICE_NAME, child=True)


@dataclass(frozen=True)
class NotificationRule:
    suffix: str
    topic: FanOutTopic

    def matches(self, key: str) -> bool:
        return key.endswith(self.suffix)


class ObjectStore:
    """In-memory buckets with S3-style creation notifications."""

    def __init__(self) -> None:
        self._objects: Dict[Tuple[str, str], bytes] = {}
        self._rules: Dict[str, List[NotificationRule]] = {}
        self._lock = threading.Lock()

    def create_bucket(self, bucket: str) -> None:
        with self._lock:
            self._rules.setdefault(bucket, [])

    def add_event_notification(self, bucket: str, topic: FanOutTopic, suffix: str) -> None:
        with self._lock:
            self._rules.setdefault(bucket, []).append(NotificationRule(suffix, topic))

    def put_object(self, bucket: str, key: str, body: bytes) -> Optional[Notification]:
        """
        Stores an object and emits its creation notification.

        Returns:
            The emitted notification, or None when no rule matched the key.
        """
        with self._lock:
            if bucket not in self._rules:
                raise KeyError(f"No such bucket: {bucket}")
            self._objects[(bucket, key)] = body
            rule = next((r for r in self._rules[bucket] if r.matches(key)), None)

        if rule is None:
            logger.debug("No notification rule matched.", extra={"bucket": bucket, "key": key})
            return None

        notification = Notification(
            bucket=bucket, key=key, size=len(body), event_time=datetime.now(timezone.utc)
        )
        rule.topic.publish(notification)
        return notification

    # --- Storage interface used by processors ---

    def read(self, ref: ObjectRef) -> bytes:
        with self._lock:
            try:
                return self._objects[(ref.bucket, ref.key)]
            except KeyError:
                raise FileNotFoundError(str(ref)) from None

    def write(self, ref: ObjectRef, data: bytes) -> None:
        with self._lock:
            if ref.bucket not in self._rules:
                raise KeyError(f"No such bucket: {ref.bucket}")
            self._objects[(ref.bucket, ref.key)] = data

    def keys(self, bucket: str) -> List[str]:
        with self._lock:
            return sorted(k for b, k in self._objects if b == bucket)
