"""
Core business logic for the image fan-out pipeline.

These functions are designed to be "pure" and testable, containing no
direct AWS SDK calls (unless passed in as arguments) and no global state.
They receive all dependencies, including the Powertools logger, from their
callers, allowing them to be unit-tested without a live queue.
"""

import json
import random
import time
from typing import Any, Dict, Iterable, List, Optional, Set, cast

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError
from mypy_boto3_sqs.client import SQSClient
from mypy_boto3_sqs.type_defs import DeleteMessageBatchRequestEntryTypeDef

from .exceptions import MalformedMessageError
from .model import Batch, ItemResult, Notification, ObjectRef, SQSEventRecord
from .processor import Processor


def parse_notifications(body: str) -> List[Notification]:
    """
    Decodes a queue message body into the notifications it carries.

    Accepts both the topic envelope (`{"Type": "Notification", "Message": ...}`)
    and a raw S3 event (`{"Records": [...]}`), as delivered with raw message
    delivery enabled. S3 test events carry no records and yield nothing.

    Raises:
        MalformedMessageError: If the body is not a recognisable event.
    """
    try:
        payload = json.loads(body)
        if isinstance(payload, dict) and payload.get("Type") == "Notification":
            payload = json.loads(payload["Message"])
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise MalformedMessageError(f"Message body is not valid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedMessageError("Message body is not a JSON object.")
    if payload.get("Event") == "s3:TestEvent":
        return []
    records = payload.get("Records")
    if not isinstance(records, list):
        raise MalformedMessageError("Message body has no 'Records' list.")
    return [Notification.from_record(record) for record in records]


def process_message(body: str, processor: Processor) -> List[ObjectRef]:
    """Runs the processor over every notification in one message body."""
    return [processor.process(n.object_ref) for n in parse_notifications(body)]


def process_batch(
    batch: Batch,
    processor: Processor,
    logger: Logger,
    deadline: Optional[float] = None,
    clock=time.monotonic,
) -> List[ItemResult]:
    """
    Processes each message of a batch independently.

    Any exception raised for one message is caught and recorded as that
    message's failure; siblings are unaffected. When `deadline` (a `clock`
    reading) passes, no further messages are started and the remainder is
    left out of the results.

    Returns:
        One ItemResult per processed message, in batch order.
    """
    results: List[ItemResult] = []
    for message in batch:
        if deadline is not None and clock() >= deadline:
            logger.warning(
                "Invocation budget exhausted; leaving remaining messages in flight.",
                extra={"unprocessed": len(batch) - len(results)},
            )
            break
        try:
            outputs = process_message(message.body, processor)
            results.append(ItemResult.ok(message, outputs))
        except Exception as e:
            logger.exception(
                "Failed to process message.",
                extra={"messageId": message.message_id, "receive_count": message.receive_count},
            )
            results.append(ItemResult.failed(message, f"{type(e).__name__}: {e}"))
    return results


def failed_ids(results: Iterable[ItemResult]) -> Set[str]:
    return {r.message_id for r in results if not r.success}


def build_batch_response(results: Iterable[ItemResult]) -> Dict[str, Any]:
    """
    Builds the partial-batch response.

    Exactly the failed items are listed; the queue runtime treats every
    identifier not listed as successfully processed and deletes it.
    """
    failures = [r.message_id for r in results if not r.success]
    return {"batchItemFailures": [{"itemIdentifier": msg_id} for msg_id in failures]}


def delete_sqs_messages(
    sqs_client: SQSClient,
    queue_url: str,
    messages: List[SQSEventRecord],
    logger: Logger,
    max_attempts: int = 3,
    base_delay: float = 0.2,
) -> int:
    """
    Deletes a list of messages from SQS, retrying transient failures with exponential backoff.

    Messages are deleted in batches of 10. Entries the service rejects as the
    sender's fault (typically `ReceiptHandleIsInvalid` for a message that was
    already deleted or redelivered) are stale: they are logged and counted as
    not deleted without being retried. Only server-side failures and client
    errors on the whole call are retried.

    Args:
        sqs_client: The boto3 SQS client.
        queue_url: The URL of the SQS queue.
        messages: The messages to delete; only `messageId` and `receiptHandle` are used.
        logger: The Powertools Logger instance for structured logging.
        max_attempts: Calls per batch before giving up on its remaining entries.
        base_delay: First backoff delay in seconds; doubles on each retry.

    Returns:
        The number of messages that were not deleted.
    """
    if not messages:
        return 0

    total_failed_count = 0
    message_map = {m["messageId"]: m["receiptHandle"] for m in messages}

    message_ids_to_delete = list(message_map.keys())
    for i in range(0, len(message_ids_to_delete), 10):
        batch_ids = message_ids_to_delete[i : i + 10]
        entries_to_delete = cast(
            List[DeleteMessageBatchRequestEntryTypeDef],
            [{"Id": msg_id, "ReceiptHandle": message_map[msg_id]} for msg_id in batch_ids],
        )

        for attempt in range(max_attempts):
            try:
                response = sqs_client.delete_message_batch(QueueUrl=queue_url, Entries=entries_to_delete)
            except ClientError as e:
                logger.error(
                    "ClientError on SQS delete_message_batch.",
                    extra={"error": str(e), "attempt": attempt + 1},
                )
            else:
                failed_batch = response.get("Failed", [])
                stale = [f["Id"] for f in failed_batch if f.get("SenderFault")]
                if stale:
                    logger.info("Skipping delete of stale receipt handles.", extra={"stale_ids": stale})
                    total_failed_count += len(stale)
                retryable = {f["Id"] for f in failed_batch if not f.get("SenderFault")}
                entries_to_delete = [e for e in entries_to_delete if e["Id"] in retryable]
                if not entries_to_delete:
                    break
                logger.warning(
                    "Partial failure in SQS delete batch.",
                    extra={"attempt": attempt + 1, "retryable_ids": sorted(retryable)},
                )

            if attempt + 1 < max_attempts:
                # Backoff doubles from base_delay, plus up to half of base_delay in jitter.
                wait_time = (base_delay * (2**attempt)) + random.uniform(0.0, base_delay / 2)
                logger.info(f"Waiting {wait_time:.2f}s before SQS delete retry.")
                time.sleep(wait_time)

        if entries_to_delete:
            logger.critical(
                f"{len(entries_to_delete)} messages failed to be deleted after all retries.",
                extra={"failed_ids": [e["Id"] for e in entries_to_delete]},
            )
            total_failed_count += len(entries_to_delete)

    return total_failed_count
