import io
import os
from dataclasses import dataclass

import boto3
import pytest
from moto import mock_aws
from PIL import Image

os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("AWS_SECURITY_TOKEN", "testing")
os.environ.setdefault("AWS_SESSION_TOKEN", "testing")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("POWERTOOLS_METRICS_NAMESPACE", "ImageFanOutPipelineTest")

from fanout_pipeline.config import PipelineConfig  # noqa: E402
from fanout_pipeline.durable_queue import DurableQueue  # noqa: E402
from fanout_pipeline.model import ObjectRef  # noqa: E402

AWS_REGION = "us-east-1"
INPUT_BUCKET = "image-input-bucket-123456789012"
OUTPUT_BUCKET = "image-input-bucket-123456789012-resized"


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingProcessor:
    """Processor stub that records calls and fails for configured keys."""

    def __init__(self, fail_keys=(), fail_times=None):
        self.fail_keys = set(fail_keys)
        # key -> number of remaining failures; None means fail forever
        self.fail_times = dict(fail_times or {})
        self.calls = []

    def process(self, ref: ObjectRef) -> ObjectRef:
        self.calls.append(ref.key)
        if ref.key in self.fail_times:
            if self.fail_times[ref.key] > 0:
                self.fail_times[ref.key] -= 1
                raise RuntimeError(f"transient failure for {ref.key}")
        elif ref.key in self.fail_keys:
            raise RuntimeError(f"permanent failure for {ref.key}")
        return ObjectRef(OUTPUT_BUCKET, ref.key)


@dataclass
class LambdaContext:
    function_name: str = "image-processor"
    memory_limit_in_mb: int = 512
    invoked_function_arn: str = "arn:aws:lambda:us-east-1:123456789012:function:image-processor"
    aws_request_id: str = "52fdfc07-2182-154f-163f-5f0f9a621d72"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def queue(clock):
    return DurableQueue("image-processing-queue", visibility_timeout=300, retention_period=4 * 24 * 3600, clock=clock)


@pytest.fixture
def config():
    return PipelineConfig(input_bucket=INPUT_BUCKET, output_bucket=OUTPUT_BUCKET)


@pytest.fixture
def make_image():
    def _make_image(fmt: str = "JPEG", size=(640, 480), color=(200, 30, 30)) -> bytes:
        buffer = io.BytesIO()
        Image.new("RGB", size, color).save(buffer, fmt)
        return buffer.getvalue()

    return _make_image


@pytest.fixture
def lambda_context():
    return LambdaContext()


@pytest.fixture
def mock_s3_client():
    with mock_aws():
        yield boto3.client("s3", region_name=AWS_REGION)


@pytest.fixture
def mock_sqs_client():
    with mock_aws():
        yield boto3.client("sqs", region_name=AWS_REGION)
