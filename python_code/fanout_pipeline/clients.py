"""
A factory module for creating and providing boto3 clients.

The Lambda handler and the SQS adapter receive clients from here rather than
building their own, so tests can run the exact same code against `moto`
without making real AWS calls.
"""

import os
from typing import Tuple

import boto3
import botocore.config
from aws_lambda_powertools import Logger
from mypy_boto3_s3 import S3Client
from mypy_boto3_sqs import SQSClient

from .config import SERVICE_NAME

logger = Logger(service=SERVICE_NAME, child=True)

# A shared, robust retry configuration for clients that need to be resilient
# to transient network or server-side errors.
BOTO_CONFIG_RETRYABLE = botocore.config.Config(
    retries={"max_attempts": 5, "mode": "adaptive"}
)


def get_boto_clients() -> Tuple[S3Client, SQSClient]:
    """
    Returns a tuple of the AWS service clients used by the pipeline.

    The AWS region is explicitly read from the environment to ensure consistent
    behavior across clients. When `moto` is active in tests these calls are
    intercepted and return mocked clients.

    Returns:
        A tuple containing initialized boto3 clients in the following order:
        (s3_client, sqs_client)
    """
    aws_region = os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION")
    if not aws_region:
        logger.warning("AWS_REGION not set, boto3 will attempt to resolve it.")

    if os.environ.get("USE_MOTO"):
        logger.info("MOTO ENABLED: Returning mocked AWS clients.")

    s3_client: S3Client = boto3.client("s3", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE)
    sqs_client: SQSClient = boto3.client("sqs", region_name=aws_region, config=BOTO_CONFIG_RETRYABLE)
    return s3_client, sqs_client
