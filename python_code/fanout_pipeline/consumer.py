"""
Batch consumer: drains the queue and reports per-item success or failure.

One `run_once` call models one consumer invocation: receive a batch, process
every message independently, delete the successes and release the failures.
Messages the invocation never got to stay in flight and come back on their
own after the visibility timeout.
"""

import threading
import time
from typing import Callable, Dict, Protocol

from aws_lambda_powertools import Logger

from . import core
from .config import SERVICE_NAME, PipelineConfig
from .model import Batch, InvocationResult
from .processor import Processor

logger = Logger(service=SERVICE_NAME, child=True)


class ConsumerQueue(Protocol):
    def receive(self, max_count: int, max_wait: float) -> Batch:
        ...

    def delete_batch(self, handles: Dict[str, str]) -> int:
        ...

    def release(self, receipt_handle: str) -> bool:
        ...


class BatchConsumer:
    """
    Polls a queue for batches and processes them with a `Processor`.

    Args:
        queue: Anything implementing receive/delete/release.
        processor: The per-object processing capability.
        batch_size: Maximum messages per receive.
        batching_window: Maximum seconds to wait for a batch.
        invocation_timeout: Budget per invocation; no new item starts after it.
        clock: Monotonic time source for the invocation budget.
    """

    def __init__(
        self,
        queue: ConsumerQueue,
        processor: Processor,
        batch_size: int = 10,
        batching_window: float = 5.0,
        invocation_timeout: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.queue = queue
        self.processor = processor
        self.batch_size = batch_size
        self.batching_window = batching_window
        self.invocation_timeout = invocation_timeout
        self._clock = clock

    @classmethod
    def from_config(cls, queue: ConsumerQueue, processor: Processor, config: PipelineConfig) -> "BatchConsumer":
        return cls(
            queue,
            processor,
            batch_size=config.batch_size,
            batching_window=config.batching_window,
            invocation_timeout=config.invocation_timeout,
        )

    def run_once(self) -> InvocationResult:
        started = self._clock()
        batch = self.queue.receive(self.batch_size, self.batching_window)
        if not batch:
            return InvocationResult()

        logger.info(f"Received {len(batch)} messages to process.")
        results = core.process_batch(
            batch, self.processor, logger, deadline=started + self.invocation_timeout, clock=self._clock
        )

        outcome = InvocationResult(
            results=results,
            unprocessed=len(batch) - len(results),
            response=core.build_batch_response(results),
        )
        succeeded = {r.message_id: r.receipt_handle for r in results if r.success and r.receipt_handle}
        outcome.deleted = self.queue.delete_batch(succeeded)
        for result in results:
            if not result.success and result.receipt_handle is not None:
                outcome.released += int(self.queue.release(result.receipt_handle))

        logger.info(
            "Batch processed.",
            extra={
                "received": len(batch),
                "deleted": outcome.deleted,
                "released": outcome.released,
                "unprocessed": outcome.unprocessed,
                "failed_ids": sorted(core.failed_ids(results)),
            },
        )
        return outcome

    def run(self, stop_event: threading.Event) -> int:
        """Runs invocations until `stop_event` is set. Returns the number of messages handled."""
        handled = 0
        while not stop_event.is_set():
            try:
                handled += len(self.run_once().results)
            except Exception:
                # Nothing was acknowledged; the batch redelivers after its visibility timeout.
                logger.exception("Consumer invocation crashed.")
        return handled
