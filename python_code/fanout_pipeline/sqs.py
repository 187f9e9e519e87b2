"""
An SQS-backed queue exposing the same consumer interface as `DurableQueue`.

This lets `BatchConsumer` drain a real SQS queue (or a moto one in tests) with
long polling, deleting successes and releasing failures by resetting their
visibility timeout to zero.
"""

from typing import Dict, List, Optional

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError
from mypy_boto3_sqs import SQSClient

from . import core
from .config import MAX_BATCH_SIZE, SERVICE_NAME
from .model import Batch, Message, MessageState, SQSEventRecord

logger = Logger(service=SERVICE_NAME, child=True)

# Long polling is capped by the ReceiveMessage API.
MAX_WAIT_SECONDS = 20

# Error codes meaning the receipt handle no longer refers to an in-flight receive.
STALE_HANDLE_ERRORS = ("ReceiptHandleIsInvalid", "InvalidParameterValue", "MessageNotInflight")


class SQSQueue:
    def __init__(self, sqs_client: SQSClient, queue_url: str):
        self._sqs = sqs_client
        self.queue_url = queue_url

    def receive(self, max_count: int = MAX_BATCH_SIZE, max_wait: float = 0.0) -> Batch:
        response = self._sqs.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=max(1, min(max_count, MAX_BATCH_SIZE)),
            WaitTimeSeconds=int(max(0, min(max_wait, MAX_WAIT_SECONDS))),
            AttributeNames=["ApproximateReceiveCount", "SentTimestamp", "ApproximateFirstReceiveTimestamp"],
        )
        batch: Batch = []
        for raw in response.get("Messages", []):
            attrs = raw.get("Attributes", {})
            handle = raw["ReceiptHandle"]
            batch.append(
                Message(
                    message_id=raw["MessageId"],
                    body=raw["Body"],
                    enqueued_at=int(attrs.get("SentTimestamp", "0")) / 1000,
                    state=MessageState.IN_FLIGHT,
                    receipt_handle=handle,
                    receive_count=int(attrs.get("ApproximateReceiveCount", "1")),
                    first_received_at=_seconds(attrs.get("ApproximateFirstReceiveTimestamp")),
                )
            )
        return batch

    def delete(self, receipt_handle: str) -> bool:
        try:
            self._sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in STALE_HANDLE_ERRORS:
                logger.info("Ignoring delete with stale receipt handle.", extra={"error": str(e)})
                return False
            raise

    def delete_batch(self, handles: Dict[str, str]) -> int:
        """Deletes messages keyed by message id. Returns how many were deleted."""
        records: List[SQSEventRecord] = [
            {"messageId": message_id, "receiptHandle": handle, "body": ""} for message_id, handle in handles.items()
        ]
        return len(records) - core.delete_sqs_messages(self._sqs, self.queue_url, records, logger)

    def release(self, receipt_handle: str) -> bool:
        try:
            self._sqs.change_message_visibility(
                QueueUrl=self.queue_url, ReceiptHandle=receipt_handle, VisibilityTimeout=0
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] in STALE_HANDLE_ERRORS:
                logger.info("Ignoring release with stale receipt handle.", extra={"error": str(e)})
                return False
            raise

    def attributes(self) -> Dict[str, int]:
        attrs = self._sqs.get_queue_attributes(
            QueueUrl=self.queue_url,
            AttributeNames=["ApproximateNumberOfMessages", "ApproximateNumberOfMessagesNotVisible"],
        ).get("Attributes", {})
        return {k: int(v) for k, v in attrs.items()}


def _seconds(millis: Optional[str]) -> Optional[float]:
    return int(millis) / 1000 if millis else None
