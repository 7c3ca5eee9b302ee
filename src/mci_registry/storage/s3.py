# src/mci_registry/storage/s3.py
"""
S3-compatible backend (AWS S3, MinIO, Ceph RGW) built on boto3.

One bucket, payload kinds separated by key prefix. Client-side botocore
retries are disabled; ObjectStoreClient owns the retry budget so a single
bounded backoff policy applies to every backend.
"""
import logging
from typing import Iterator, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from mci_registry.clock import to_naive_utc
from mci_registry.errors import ObjectNotFoundError
from mci_registry.storage.base import ObjectBackend, ObjectInfo

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


def _is_not_found(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in NOT_FOUND_CODES


def create_client(
    endpoint_url: Optional[str],
    region: str,
    access_key: Optional[str] = None,
    secret_key: Optional[str] = None,
    force_path_style: bool = True,
    connect_timeout: float = 5.0,
    read_timeout: float = 30.0,
):
    """Create a boto3 S3 client with bounded timeouts."""
    config = Config(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"max_attempts": 1, "mode": "standard"},
        s3={"addressing_style": "path" if force_path_style else "auto"},
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint_url,
        region_name=region,
        aws_access_key_id=access_key,
        aws_secret_access_key=secret_key,
        config=config,
    )


class S3Backend(ObjectBackend):
    name = "s3"

    def __init__(self, client, bucket: str):
        self.client = client
        self.bucket = bucket

    def put(self, key: str, data: bytes) -> None:
        self.client.put_object(Bucket=self.bucket, Key=key, Body=data)

    def get(self, key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFoundError(key) from None
            raise
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def head(self, key: str) -> Optional[ObjectInfo]:
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if _is_not_found(e):
                return None
            raise
        return ObjectInfo(
            key=key,
            size=int(response["ContentLength"]),
            last_modified=to_naive_utc(response["LastModified"]),
        )

    def delete(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)

    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        paginator = self.client.get_paginator("list_objects_v2")
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            for item in page.get("Contents", []):
                yield ObjectInfo(
                    key=item["Key"],
                    size=int(item["Size"]),
                    last_modified=to_naive_utc(item["LastModified"]),
                )

    def touch(self, key: str) -> None:
        # A self-copy with REPLACE is the only way to bump LastModified in S3.
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                Key=key,
                CopySource={"Bucket": self.bucket, "Key": key},
                MetadataDirective="REPLACE",
            )
        except ClientError as e:
            if _is_not_found(e):
                raise ObjectNotFoundError(key) from None
            raise
        logger.debug(f"Touched s3://{self.bucket}/{key}")

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close is not None:
            close()
