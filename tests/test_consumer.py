import threading
import time
from datetime import datetime, timezone

import pytest

from conftest import RecordingProcessor
from fanout_pipeline.consumer import BatchConsumer
from fanout_pipeline.model import Notification
from fanout_pipeline.topic import FanOutTopic


@pytest.fixture
def topic(queue):
    topic = FanOutTopic("image-processing-topic")
    topic.subscribe(queue)
    return topic


def _publish(topic, *keys):
    for key in keys:
        topic.publish(Notification("input", key, 10, datetime.now(timezone.utc)))


def _consumer(queue, processor, **kwargs):
    kwargs.setdefault("batching_window", 0)
    return BatchConsumer(queue, processor, **kwargs)


def test_single_failure_deletes_siblings_and_redelivers_only_the_failure(queue, topic, clock):
    keys = [f"img-{i}.jpg" for i in range(5)]
    _publish(topic, *keys)
    processor = RecordingProcessor(fail_keys={"img-2.jpg"})

    outcome = _consumer(queue, processor).run_once()

    assert outcome.deleted == 4
    assert outcome.released == 1
    assert outcome.response == {"batchItemFailures": [{"itemIdentifier": outcome.results[2].message_id}]}
    assert len(queue) == 1

    processor.fail_keys.clear()
    processor.calls.clear()
    clock.advance(300)
    _consumer(queue, processor).run_once()

    assert processor.calls == ["img-2.jpg"]
    assert len(queue) == 0


def test_every_notification_is_processed_despite_transient_failure(queue, topic):
    keys = [f"img-{i}.png" for i in range(25)]
    _publish(topic, *keys)
    processor = RecordingProcessor(fail_times={"img-7.png": 1})
    consumer = _consumer(queue, processor)

    for _ in range(10):
        if not consumer.run_once().received:
            break

    assert set(processor.calls) == set(keys)
    assert processor.calls.count("img-7.png") == 2
    assert len(queue) == 0


def test_empty_queue_yields_empty_invocation(queue):
    outcome = _consumer(queue, RecordingProcessor()).run_once()

    assert outcome.received == 0
    assert outcome.results == []


def test_crashed_invocation_acknowledges_nothing(queue, topic, clock, mocker):
    _publish(topic, "a.jpg", "b.jpg")
    mocker.patch("fanout_pipeline.consumer.core.process_batch", side_effect=MemoryError("out of memory"))
    consumer = _consumer(queue, RecordingProcessor())

    with pytest.raises(MemoryError):
        consumer.run_once()

    assert queue.attributes()["ApproximateNumberOfMessagesNotVisible"] == 2
    clock.advance(300)
    assert queue.attributes()["ApproximateNumberOfMessages"] == 2


def test_items_beyond_invocation_budget_stay_in_flight(queue, topic, clock):
    _publish(topic, "a.jpg", "b.jpg", "c.jpg")

    class SlowProcessor(RecordingProcessor):
        def process(self, ref):
            clock.advance(100)
            return super().process(ref)

    processor = SlowProcessor()
    outcome = _consumer(queue, processor, invocation_timeout=150, clock=clock).run_once()

    assert outcome.deleted == 2
    assert outcome.unprocessed == 1
    assert queue.attributes() == {"ApproximateNumberOfMessages": 0, "ApproximateNumberOfMessagesNotVisible": 1}

    clock.advance(300)
    _consumer(queue, processor, clock=clock).run_once()
    assert processor.calls == ["a.jpg", "b.jpg", "c.jpg"]
    assert len(queue) == 0


def test_run_loop_stops_on_event(queue, topic):
    _publish(topic, "a.jpg", "b.jpg", "c.jpg")
    processor = RecordingProcessor()
    consumer = _consumer(queue, processor, batching_window=0.05)
    stop = threading.Event()
    handled = []

    worker = threading.Thread(target=lambda: handled.append(consumer.run(stop)))
    worker.start()
    try:
        for _ in range(100):
            if len(queue) == 0:
                break
            time.sleep(0.02)
    finally:
        stop.set()
        worker.join(timeout=5)

    assert handled == [3]
    assert sorted(processor.calls) == ["a.jpg", "b.jpg", "c.jpg"]


def test_run_loop_survives_crashed_invocation(queue, topic, mocker):
    _publish(topic, "a.jpg")
    consumer = _consumer(queue, RecordingProcessor(), batching_window=0.01)
    stop = threading.Event()
    calls = []

    def _crash():
        calls.append(1)
        if len(calls) >= 3:
            stop.set()
        raise RuntimeError("boom")

    mocker.patch.object(consumer, "run_once", side_effect=_crash)

    assert consumer.run(stop) == 0
    assert len(calls) == 3
