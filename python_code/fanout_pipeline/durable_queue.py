"""
In-process durable queue with visibility-timeout redelivery.

Each message is an explicit state object (VISIBLE -> IN_FLIGHT -> DELETED or
back to VISIBLE) kept in a lock-guarded map keyed by message id. Expired
in-flight messages are released on every queue operation and, optionally, by
a background sweeper thread. Messages older than the retention period are
dropped whatever their state.
"""

import json
import threading
import time
import uuid
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

from aws_lambda_powertools import Logger

from .config import MAX_BATCH_SIZE, SERVICE_NAME
from .model import Batch, Message, MessageState

logger = Logger(service=SERVICE_NAME, child=True)

Clock = Callable[[], float]


class DurableQueue:
    """
    An at-least-once, competing-consumers buffer.

    Args:
        name: Queue name, used in logs.
        visibility_timeout: Seconds a received message stays hidden.
        retention_period: Maximum lifetime of a message in seconds.
        max_receive_count: Receives after which an expiring message is moved
            to `dead_letter_queue` instead of becoming visible again.
        dead_letter_queue: Target for poison messages.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        name: str,
        visibility_timeout: float = 300.0,
        retention_period: float = 4 * 24 * 60 * 60,
        max_receive_count: Optional[int] = None,
        dead_letter_queue: Optional["DurableQueue"] = None,
        clock: Clock = time.monotonic,
    ):
        if max_receive_count is not None and dead_letter_queue is None:
            raise ValueError("max_receive_count requires a dead_letter_queue.")
        self.name = name
        self.visibility_timeout = visibility_timeout
        self.retention_period = retention_period
        self.max_receive_count = max_receive_count
        self.dead_letter_queue = dead_letter_queue
        self._clock = clock
        self._messages: "OrderedDict[str, Message]" = OrderedDict()
        self._handles: Dict[str, str] = {}
        self._cond = threading.Condition()
        self._sweeper: Optional[threading.Thread] = None
        self._sweeper_stop = threading.Event()

    # --- Topic subscriber interface ---

    def deliver(self, envelope: Dict[str, Any]) -> None:
        self.enqueue(json.dumps(envelope))

    # --- Producer side ---

    def enqueue(self, body: str, enqueued_at: Optional[float] = None) -> str:
        """Appends a visible message. `enqueued_at` keeps the age of a message moved from another queue."""
        message_id = str(uuid.uuid4())
        with self._cond:
            if enqueued_at is None:
                enqueued_at = self._clock()
            self._messages[message_id] = Message(message_id=message_id, body=body, enqueued_at=enqueued_at)
            self._cond.notify_all()
        logger.debug("Message enqueued.", extra={"queue": self.name, "messageId": message_id})
        return message_id

    # --- Consumer side ---

    def receive(self, max_count: int = MAX_BATCH_SIZE, max_wait: float = 0.0) -> Batch:
        """
        Receives up to `max_count` visible messages.

        Blocks for at most `max_wait` seconds of wall time when nothing is
        visible. Every returned message moves to IN_FLIGHT with a fresh
        receipt handle and an incremented receive count.
        """
        max_count = max(1, min(max_count, MAX_BATCH_SIZE))
        deadline = time.monotonic() + max_wait
        with self._cond:
            while True:
                self._sweep_locked()
                batch = self._take_visible_locked(max_count)
                if batch:
                    return batch
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return []
                self._cond.wait(timeout=min(remaining, self._next_expiry_wait_locked()))

    def delete(self, receipt_handle: str) -> bool:
        """Deletes an in-flight message. A stale handle is a no-op returning False."""
        with self._cond:
            self._sweep_locked()
            message = self._in_flight_for_locked(receipt_handle)
            if message is None:
                logger.info("Ignoring delete with stale receipt handle.", extra={"queue": self.name})
                return False
            message.state = MessageState.DELETED
            self._forget_locked(message)
            return True

    def delete_batch(self, handles: Dict[str, str]) -> int:
        """Deletes messages keyed by message id. Returns how many were deleted."""
        return sum(1 for handle in handles.values() if self.delete(handle))

    def release(self, receipt_handle: str) -> bool:
        """Makes an in-flight message visible again immediately."""
        return self.change_visibility(receipt_handle, 0)

    def change_visibility(self, receipt_handle: str, timeout: float) -> bool:
        with self._cond:
            self._sweep_locked()
            message = self._in_flight_for_locked(receipt_handle)
            if message is None:
                logger.info("Ignoring visibility change with stale receipt handle.", extra={"queue": self.name})
                return False
            if timeout <= 0:
                self._expire_locked(message)
                self._cond.notify_all()
            else:
                message.visible_at = self._clock() + timeout
            return True

    # --- Introspection ---

    def attributes(self) -> Dict[str, int]:
        with self._cond:
            self._sweep_locked()
            visible = sum(1 for m in self._messages.values() if m.state == MessageState.VISIBLE)
            return {
                "ApproximateNumberOfMessages": visible,
                "ApproximateNumberOfMessagesNotVisible": len(self._messages) - visible,
            }

    def __len__(self) -> int:
        with self._cond:
            self._sweep_locked()
            return len(self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        with self._cond:
            message = self._messages.get(message_id)
            return message.snapshot() if message else None

    def sweep(self) -> None:
        """Applies visibility expiry and retention against the current clock."""
        with self._cond:
            self._sweep_locked()

    # --- Background sweeper ---

    def start_sweeper(self, interval: float = 1.0) -> None:
        if self._sweeper and self._sweeper.is_alive():
            return
        self._sweeper_stop.clear()

        def _run() -> None:
            while not self._sweeper_stop.wait(interval):
                self.sweep()

        self._sweeper = threading.Thread(target=_run, name=f"{self.name}-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._sweeper_stop.set()
        if self._sweeper:
            self._sweeper.join()
            self._sweeper = None

    # --- Internals (caller holds the lock) ---

    def _take_visible_locked(self, max_count: int) -> Batch:
        now = self._clock()
        batch: Batch = []
        for message in self._messages.values():
            if len(batch) >= max_count:
                break
            if message.state != MessageState.VISIBLE:
                continue
            message.state = MessageState.IN_FLIGHT
            message.receive_count += 1
            message.visible_at = now + self.visibility_timeout
            if message.first_received_at is None:
                message.first_received_at = now
            message.receipt_handle = uuid.uuid4().hex
            self._handles[message.receipt_handle] = message.message_id
            batch.append(message.snapshot())
        return batch

    def _in_flight_for_locked(self, receipt_handle: str) -> Optional[Message]:
        message_id = self._handles.get(receipt_handle)
        message = self._messages.get(message_id) if message_id else None
        if message is None or message.state != MessageState.IN_FLIGHT or message.receipt_handle != receipt_handle:
            return None
        return message

    def _forget_locked(self, message: Message) -> None:
        self._messages.pop(message.message_id, None)
        if message.receipt_handle:
            self._handles.pop(message.receipt_handle, None)

    def _expire_locked(self, message: Message) -> None:
        if message.receipt_handle:
            self._handles.pop(message.receipt_handle, None)
        message.receipt_handle = None
        dlq = self.dead_letter_queue
        if dlq is not None and self.max_receive_count is not None and message.receive_count >= self.max_receive_count:
            logger.warning(
                "Moving message to dead-letter queue.",
                extra={"queue": self.name, "messageId": message.message_id, "receive_count": message.receive_count},
            )
            self._forget_locked(message)
            dlq.enqueue(message.body, enqueued_at=message.enqueued_at)
            return
        message.state = MessageState.VISIBLE

    def _sweep_locked(self) -> None:
        now = self._clock()
        released = False
        for message in list(self._messages.values()):
            if now - message.enqueued_at >= self.retention_period:
                logger.warning(
                    "Discarding message past retention period.",
                    extra={"queue": self.name, "messageId": message.message_id, "state": message.state.value},
                )
                self._forget_locked(message)
            elif message.state == MessageState.IN_FLIGHT and now >= message.visible_at:
                self._expire_locked(message)
                released = True
        if released:
            self._cond.notify_all()

    def _next_expiry_wait_locked(self) -> float:
        now = self._clock()
        pending = [m.visible_at - now for m in self._messages.values() if m.state == MessageState.IN_FLIGHT]
        return max(min(pending), 0.01) if pending else 1.0
