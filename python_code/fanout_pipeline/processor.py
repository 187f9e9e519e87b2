"""
The thumbnail capability: `process(ObjectRef) -> ObjectRef`.

Consumers only depend on the `Processor` protocol. `ThumbnailProcessor` reads
the source object through a `Storage` adapter, shrinks it with Pillow, and
writes it to the output bucket under the same key. Writing to a fixed key
makes reprocessing a redelivered notification an overwrite, never a duplicate.
"""

import io
from typing import Protocol, Tuple

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError
from mypy_boto3_s3 import S3Client
from PIL import Image, UnidentifiedImageError

from .config import SERVICE_NAME
from .exceptions import ProcessingError
from .model import ObjectRef

logger = Logger(service=SERVICE_NAME, child=True)

_FORMATS = {".jpg": "JPEG", ".jpeg": "JPEG", ".png": "PNG"}
_CONTENT_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png"}


class Processor(Protocol):
    def process(self, ref: ObjectRef) -> ObjectRef:
        ...


class Storage(Protocol):
    def read(self, ref: ObjectRef) -> bytes:
        ...

    def write(self, ref: ObjectRef, data: bytes) -> None:
        ...


class S3Storage:
    """`Storage` backed by an S3 client."""

    def __init__(self, s3_client: S3Client):
        self._s3 = s3_client

    def read(self, ref: ObjectRef) -> bytes:
        response = self._s3.get_object(Bucket=ref.bucket, Key=ref.key)
        with response["Body"] as body:
            return body.read()

    def write(self, ref: ObjectRef, data: bytes) -> None:
        fmt = _FORMATS.get(_extension(ref.key), "JPEG")
        self._s3.put_object(Bucket=ref.bucket, Key=ref.key, Body=data, ContentType=_CONTENT_TYPES[fmt])


def _extension(key: str) -> str:
    dot = key.rfind(".")
    return key[dot:].lower() if dot != -1 else ""


def make_thumbnail(data: bytes, size: Tuple[int, int], fmt: str) -> bytes:
    """Shrinks an encoded image to fit within `size`, keeping its aspect ratio."""
    with Image.open(io.BytesIO(data)) as img:
        img.thumbnail(size)
        if fmt == "JPEG" and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        out = io.BytesIO()
        img.save(out, fmt)
        return out.getvalue()


class ThumbnailProcessor:
    """
    Creates a thumbnail of the referenced object in `output_bucket`.

    Args:
        storage: Where source objects are read from and thumbnails written to.
        output_bucket: Destination bucket; the key is kept as-is.
        size: Bounding box of the thumbnail.
    """

    def __init__(self, storage: Storage, output_bucket: str, size: Tuple[int, int] = (128, 128)):
        self.storage = storage
        self.output_bucket = output_bucket
        self.size = size

    def process(self, ref: ObjectRef) -> ObjectRef:
        fmt = _FORMATS.get(_extension(ref.key))
        if fmt is None:
            raise ProcessingError(f"Unsupported image type for {ref}")
        try:
            data = self.storage.read(ref)
            thumbnail = make_thumbnail(data, self.size, fmt)
        except (UnidentifiedImageError, OSError) as e:
            raise ProcessingError(f"Could not create thumbnail for {ref}: {e}") from e
        except ClientError as e:
            if e.response["Error"]["Code"] in ("NoSuchKey", "404"):
                raise ProcessingError(f"Source object {ref} does not exist") from e
            raise

        output = ObjectRef(self.output_bucket, ref.key)
        self.storage.write(output, thumbnail)
        logger.info("Thumbnail written.", extra={"source": str(ref), "output": str(output), "bytes": len(thumbnail)})
        return output
