"""
Main AWS Lambda handler for the image fan-out pipeline.

This module is the entry point of the deployed consumer. Its responsibilities:
  - Loading and validating configuration from environment variables.
  - Initializing and caching the S3 client and thumbnail processor.
  - Receiving batches of queue messages from the SQS event source.
  - Processing every record independently and returning a partial-batch
    response, so only failed records are retried by SQS.
  - Emitting structured logs and CloudWatch metrics.
"""

from typing import Any, Dict, Optional

from aws_lambda_powertools import Logger, Metrics
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.batch import (
    BatchProcessor,
    EventType,
    process_partial_response,
)
from aws_lambda_powertools.utilities.data_classes.sqs_event import SQSRecord

from . import clients, core
from .config import METRICS_NAMESPACE, SERVICE_NAME, PipelineConfig
from .processor import S3Storage, ThumbnailProcessor

logger = Logger(service=SERVICE_NAME)
metrics = Metrics(namespace=METRICS_NAMESPACE, service=SERVICE_NAME)

CONFIG: Optional[PipelineConfig] = None
PROCESSOR: Optional[ThumbnailProcessor] = None

batch_processor = BatchProcessor(event_type=EventType.SQS, raise_on_entire_batch_failure=False)


def get_processor() -> ThumbnailProcessor:
    """
    Returns the cached thumbnail processor, building it on first use.

    Configuration and clients are created once per execution environment and
    reused across invocations.

    Raises:
        ConfigurationError: If a required environment variable is missing.
    """
    global CONFIG, PROCESSOR
    if PROCESSOR is None:
        CONFIG = PipelineConfig.from_env()
        logger.setLevel(CONFIG.log_level)
        s3_client, _ = clients.get_boto_clients()
        PROCESSOR = ThumbnailProcessor(S3Storage(s3_client), CONFIG.output_bucket, CONFIG.thumbnail_size)
        logger.info(
            "Processor initialised.",
            extra={"input_bucket": CONFIG.input_bucket, "output_bucket": CONFIG.output_bucket, "version": CONFIG.version},
        )
    return PROCESSOR


def record_handler(record: SQSRecord) -> int:
    """Processes one SQS record. Any exception marks only this record as failed."""
    receive_count = int(record.attributes.approximate_receive_count or 1)
    if receive_count > 1:
        logger.info("Redelivered message.", extra={"messageId": record.message_id, "receive_count": receive_count})

    outputs = core.process_message(record.body, get_processor())
    metrics.add_metric(name="ThumbnailsCreated", unit=MetricUnit.Count, value=len(outputs))
    return len(outputs)


@logger.inject_lambda_context
@metrics.log_metrics
def handler(event: Dict, context: Any) -> Dict[str, Any]:
    """
    Main Lambda entry point.

    Returns the partial-batch response: `batchItemFailures` lists exactly the
    records that failed, everything else is deleted by the event source.
    An exception escaping this function means nothing was acknowledged and
    the whole batch is redelivered after the visibility timeout.
    """
    records = event.get("Records", [])
    if not records:
        return {"batchItemFailures": []}

    logger.info(f"Received {len(records)} messages to process.")
    response = process_partial_response(
        event=event, record_handler=record_handler, processor=batch_processor, context=context
    )
    failures = len(response.get("batchItemFailures", []))
    metrics.add_metric(name="ItemFailures", unit=MetricUnit.Count, value=failures)
    if failures:
        logger.warning(f"{failures} of {len(records)} messages failed and will be retried.")
    return response
