import json

import pytest

from fanout_pipeline.durable_queue import DurableQueue
from fanout_pipeline.event_source import ObjectStore
from fanout_pipeline.model import ObjectRef
from fanout_pipeline.topic import FanOutTopic


@pytest.fixture
def wired():
    store = ObjectStore()
    store.create_bucket("input")
    topic = FanOutTopic("topic")
    queue = DurableQueue("queue")
    topic.subscribe(queue)
    for suffix in (".jpg", ".jpeg", ".png"):
        store.add_event_notification("input", topic, suffix)
    return store, queue


@pytest.mark.parametrize("key", ["x.jpg", "x.jpeg", "x.png"])
def test_matching_suffix_produces_exactly_one_notification(wired, key):
    store, queue = wired

    notification = store.put_object("input", key, b"data")

    assert notification is not None
    assert notification.key == key
    assert notification.size == 4
    assert len(queue) == 1


@pytest.mark.parametrize("key", ["x.gif", "x.JPG", "x.jpg.txt", "jpg"])
def test_non_matching_key_produces_no_notification(wired, key):
    store, queue = wired

    assert store.put_object("input", key, b"data") is None
    assert len(queue) == 0


def test_object_is_stored_even_without_notification(wired):
    store, _ = wired

    store.put_object("input", "x.gif", b"gif")

    assert store.read(ObjectRef("input", "x.gif")) == b"gif"
    assert store.keys("input") == ["x.gif"]


def test_notification_body_carries_encoded_key(wired):
    store, queue = wired

    store.put_object("input", "holiday pics/beach.png", b"png")

    [message] = queue.receive(1)
    record = json.loads(json.loads(message.body)["Message"])["Records"][0]
    assert record["eventName"] == "ObjectCreated:Put"
    assert record["s3"]["bucket"]["name"] == "input"
    assert record["s3"]["object"]["key"] == "holiday+pics/beach.png"


def test_unknown_bucket_is_rejected(wired):
    store, _ = wired

    with pytest.raises(KeyError):
        store.put_object("missing", "x.jpg", b"data")


def test_read_missing_object_raises_file_not_found(wired):
    store, _ = wired

    with pytest.raises(FileNotFoundError):
        store.read(ObjectRef("input", "nope.jpg"))
