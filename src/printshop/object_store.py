"""
Object storage for uploaded photos and receipts.

Requires ``boto3`` for the S3 implementation.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterator, Protocol

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from .errors import StorageError

logger = structlog.get_logger(__name__)

PRODUCTS_PREFIX = "products/"
RECEIPTS_PREFIX = "receipts/"
DEFAULT_CHUNK_SIZE = 64 * 1024


def product_folder(product_id: str) -> str:
    """Key prefix holding every file of one product."""
    return f"{PRODUCTS_PREFIX}{product_id}/"


def normalize_folder(folder_path: str) -> str:
    """Strip leading slashes and ensure a single trailing slash."""
    folder = folder_path.strip().lstrip("/")
    if folder and not folder.endswith("/"):
        folder += "/"
    return folder


@dataclass(frozen=True)
class StoredObject:
    key: str
    size: int
    last_modified: datetime | None = None


class ObjectStream(Protocol):
    """A readable object body (botocore's StreamingBody satisfies it)."""

    def iter_chunks(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]: ...

    def close(self) -> None: ...


class ObjectStore(Protocol):
    """Operations the engine needs from an object store."""

    def list_objects(self, prefix: str) -> list[StoredObject]: ...

    def open_object(self, key: str) -> ObjectStream: ...

    def put_object(self, key: str, body: bytes, content_type: str | None = None) -> None: ...

    def delete_object(self, key: str) -> None: ...

    def presigned_url(self, key: str, expires_in: int = 3600) -> str: ...


class S3ObjectStore:
    """
    Store objects in an S3-compatible bucket.

    Usage::

        store = S3ObjectStore(
            bucket="printshop-uploads",
            endpoint_url="http://localhost:9000",  # for MinIO
        )
    """

    def __init__(
        self,
        bucket: str,
        region_name: str = "us-east-1",
        endpoint_url: str | None = None,
        client=None,
    ):
        self.bucket = bucket
        self._region_name = region_name
        self._endpoint_url = endpoint_url
        self._client = client

    def _get_client(self):
        if self._client is None:
            kwargs = {"region_name": self._region_name}
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            self._client = boto3.client("s3", **kwargs)
        return self._client

    def list_objects(self, prefix: str) -> list[StoredObject]:
        paginator = self._get_client().get_paginator("list_objects_v2")
        found: list[StoredObject] = []
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []):
                    found.append(
                        StoredObject(
                            key=obj["Key"],
                            size=int(obj.get("Size", 0)),
                            last_modified=obj.get("LastModified"),
                        )
                    )
        except (BotoCoreError, ClientError) as e:
            logger.error("s3_list_failed", bucket=self.bucket, prefix=prefix, error=str(e))
            raise StorageError("list_objects", type(e).__name__, prefix=prefix) from e
        return found

    def open_object(self, key: str) -> ObjectStream:
        try:
            resp = self._get_client().get_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error("s3_get_failed", bucket=self.bucket, key=key, error=str(e))
            raise StorageError("open_object", type(e).__name__, key=key) from e
        return resp["Body"]

    def put_object(self, key: str, body: bytes, content_type: str | None = None) -> None:
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": body}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self._get_client().put_object(**kwargs)
        except (BotoCoreError, ClientError) as e:
            logger.error("s3_put_failed", bucket=self.bucket, key=key, error=str(e))
            raise StorageError("put_object", type(e).__name__, key=key) from e
        logger.info("s3_object_stored", bucket=self.bucket, key=key, size=len(body))

    def delete_object(self, key: str) -> None:
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            logger.error("s3_delete_failed", bucket=self.bucket, key=key, error=str(e))
            raise StorageError("delete_object", type(e).__name__, key=key) from e

    def presigned_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return self._get_client().generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError("presigned_url", type(e).__name__, key=key) from e
