"""S3-compatible object storage for shared file content."""

import logging
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from . import config

logger = logging.getLogger("sharespace.objectstore")


class ObjectStoreError(RuntimeError):
    """Raised when the object store rejects or fails an operation."""


def primary_key(file_id: str, storage_id: str) -> str:
    return f"files/{file_id}/{storage_id}"


def entry_key(file_id: str, entry_token: str) -> str:
    return f"files/{file_id}/entries/{entry_token}"


class ObjectStore:
    """Thin wrapper over a boto3 S3 client bound to one bucket.

    All failures are logged and re-raised as :class:`ObjectStoreError` so
    route handlers only need to handle a single exception type.
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        region_name: str = "us-east-1",
        client: Any = None,
    ) -> None:
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region_name = region_name
        self._client = client

    @classmethod
    def from_env(cls) -> "ObjectStore":
        return cls(config.S3_BUCKET, config.S3_ENDPOINT_URL, config.S3_REGION)

    @property
    def configured(self) -> bool:
        return bool(self.bucket)

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = boto3.client(
                "s3",
                endpoint_url=self.endpoint_url,
                region_name=self.region_name,
            )
        return self._client

    def ensure_bucket(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except ClientError:
            logger.info("Creating bucket: %s", self.bucket)
            try:
                self.client.create_bucket(Bucket=self.bucket)
            except (BotoCoreError, ClientError) as error:
                logger.exception("Failed to create bucket: %s", self.bucket)
                raise ObjectStoreError(str(error)) from error

    def ping(self) -> None:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as error:
            raise ObjectStoreError(str(error)) from error

    def put_bytes(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            logger.info("Uploading object: %s (%d bytes)", key, len(data))
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except (BotoCoreError, ClientError) as error:
            logger.exception("Failed to upload object: %s", key)
            raise ObjectStoreError(str(error)) from error

    def open_stream(self, key: str) -> Any:
        """Return the streaming body for *key*; callers must close it."""

        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as error:
            logger.exception("Failed to read object: %s", key)
            raise ObjectStoreError(str(error)) from error
        return response["Body"]

    def get_bytes(self, key: str) -> bytes:
        body = self.open_stream(key)
        try:
            return body.read()
        finally:
            body.close()

    def delete(self, key: str) -> None:
        try:
            logger.info("Deleting object: %s", key)
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as error:
            logger.exception("Failed to delete object: %s", key)
            raise ObjectStoreError(str(error)) from error

    def rollback_upload(self, key: str) -> None:
        """Delete an object stored for a write whose metadata was never saved.

        Best-effort: a failure leaves an orphaned object behind and is only
        logged.
        """
        try:
            logger.warning("Rolling back upload, deleting object: %s", key)
            self.delete(key)
        except ObjectStoreError:
            logger.error("Failed to rollback upload, orphaned object: %s", key)
