"""
Wires the event source, topic, queue and consumers into one pipeline.

    input bucket --(suffix rules)--> topic --> queue --> consumers --> output bucket

`Pipeline.from_config` builds the whole graph in memory. Consumers can be
driven synchronously with `drain()` or run concurrently in a thread pool with
`start()` / `stop()`.
"""

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from aws_lambda_powertools import Logger

from .config import SERVICE_NAME, PipelineConfig
from .consumer import BatchConsumer
from .durable_queue import DurableQueue
from .event_source import ObjectStore
from .model import InvocationResult, Notification
from .processor import Processor, ThumbnailProcessor
from .topic import FanOutTopic

logger = Logger(service=SERVICE_NAME, child=True)


class Pipeline:
    def __init__(
        self,
        config: PipelineConfig,
        store: ObjectStore,
        topic: FanOutTopic,
        queue: DurableQueue,
        processor: Processor,
        dead_letter_queue: Optional[DurableQueue] = None,
    ):
        self.config = config
        self.store = store
        self.topic = topic
        self.queue = queue
        self.processor = processor
        self.dead_letter_queue = dead_letter_queue
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._workers: List[Future] = []

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        processor: Optional[Processor] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> "Pipeline":
        """
        Builds the in-memory pipeline described by `config`.

        Without an explicit processor, thumbnails are written to the output
        bucket of the same in-memory store.
        """
        store = ObjectStore()
        store.create_bucket(config.input_bucket)
        store.create_bucket(config.output_bucket)

        topic = FanOutTopic(config.topic_name)
        dead_letter_queue = None
        if config.max_receive_count is not None:
            dead_letter_queue = DurableQueue(
                f"{config.queue_name}-dlq",
                visibility_timeout=config.visibility_timeout,
                retention_period=config.retention_period,
                clock=clock,
            )
        queue = DurableQueue(
            config.queue_name,
            visibility_timeout=config.visibility_timeout,
            retention_period=config.retention_period,
            max_receive_count=config.max_receive_count,
            dead_letter_queue=dead_letter_queue,
            clock=clock,
        )
        topic.subscribe(queue)
        for suffix in config.suffixes:
            store.add_event_notification(config.input_bucket, topic, suffix)

        if processor is None:
            processor = ThumbnailProcessor(store, config.output_bucket, config.thumbnail_size)

        logger.info(
            "Pipeline built.",
            extra={"topic": topic.name, "queue": queue.name, "suffixes": list(config.suffixes), "version": config.version},
        )
        return cls(config, store, topic, queue, processor, dead_letter_queue)

    def new_consumer(self) -> BatchConsumer:
        return BatchConsumer.from_config(self.queue, self.processor, self.config)

    def upload(self, key: str, body: bytes) -> Optional[Notification]:
        return self.store.put_object(self.config.input_bucket, key, body)

    def drain(self, max_invocations: int = 1000) -> List[InvocationResult]:
        """
        Runs consumer invocations until the queue holds no visible or in-flight messages.

        Visible messages are received without waiting. When only in-flight
        messages remain (held by another consumer, or left unprocessed by an
        exhausted invocation budget), the next receive blocks until one of
        them expires. `max_invocations` bounds the number of receives,
        including ones that come back empty.

        Returns:
            The invocations that received at least one message.
        """
        consumer = self._drain_consumer(batching_window=0)
        waiting_consumer = self._drain_consumer(batching_window=self.config.visibility_timeout)
        results: List[InvocationResult] = []
        for _ in range(max_invocations):
            if len(self.queue) == 0:
                break
            result = consumer.run_once()
            if not result.received:
                result = waiting_consumer.run_once()
            if result.received:
                results.append(result)
        remaining = len(self.queue)
        if remaining:
            logger.warning(f"Drain stopped after {max_invocations} invocations.", extra={"remaining": remaining})
        return results

    def _drain_consumer(self, batching_window: float) -> BatchConsumer:
        return BatchConsumer(
            self.queue,
            self.processor,
            batch_size=self.config.batch_size,
            batching_window=batching_window,
            invocation_timeout=self.config.invocation_timeout,
        )

    def start(self, consumers: int = 1, sweep_interval: float = 1.0) -> None:
        """Starts `consumers` concurrent consumer loops and the queue's expiry sweeper."""
        if self._executor is not None:
            raise RuntimeError("Pipeline is already running.")
        self._stop.clear()
        self.queue.start_sweeper(sweep_interval)
        self._executor = ThreadPoolExecutor(max_workers=consumers, thread_name_prefix="consumer")
        self._workers = [self._executor.submit(self.new_consumer().run, self._stop) for _ in range(consumers)]
        logger.info(f"Started {consumers} consumers.")

    def stop(self) -> int:
        """Stops the consumer loops and returns how many messages they handled."""
        if self._executor is None:
            return 0
        self._stop.set()
        handled = sum(w.result() for w in self._workers)
        self._executor.shutdown(wait=True)
        self._executor = None
        self._workers = []
        self.queue.stop_sweeper()
        logger.info(f"Stopped consumers after handling {handled} messages.")
        return handled
