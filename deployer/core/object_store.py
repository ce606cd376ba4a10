"""
Object store clients for deployed artifacts.

S3ObjectStore is the production backend (boto3). InMemoryObjectStore keeps
objects in a dict and is used for local runs and tests.
"""
import logging
import threading
from typing import Optional, Protocol

import boto3

logger = logging.getLogger(__name__)


class ObjectStore(Protocol):
    """Minimal interface the uploader needs."""

    bucket: str

    def put_object(self, key: str, body: bytes, content_type: str) -> None:
        ...

    def public_url(self, key: str) -> str:
        ...

    def with_bucket(self, bucket: str) -> "ObjectStore":
        ...


class S3ObjectStore:
    """Uploads objects to an S3 bucket."""

    def __init__(
        self,
        bucket: str,
        region: str,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        if client is None:
            kwargs = {"region_name": region}
            # Without explicit keys boto3 falls back to its credential chain
            if access_key_id and secret_access_key:
                kwargs["aws_access_key_id"] = access_key_id
                kwargs["aws_secret_access_key"] = secret_access_key
            client = boto3.client("s3", **kwargs)
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "S3ObjectStore":
        return cls(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            access_key_id=settings.aws_access_key_id,
            secret_access_key=settings.aws_secret_access_key,
        )

    def put_object(self, key: str, body: bytes, content_type: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )

    def public_url(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def with_bucket(self, bucket: str) -> "S3ObjectStore":
        """Same client and region, different bucket."""
        if bucket == self.bucket:
            return self
        return S3ObjectStore(bucket, self.region, client=self._client)


class InMemoryObjectStore:
    """Dict-backed object store. Stores made by with_bucket share one registry."""

    def __init__(
        self,
        bucket: str = "local-deployments",
        region: str = "local",
        _buckets: Optional[dict] = None,
        _lock: Optional[threading.Lock] = None,
    ):
        self.bucket = bucket
        self.region = region
        self._lock = _lock or threading.Lock()
        self._buckets: dict[str, dict[str, tuple[bytes, str]]] = {} if _buckets is None else _buckets
        self.objects = self._buckets.setdefault(bucket, {})

    def put_object(self, key: str, body: bytes, content_type: str) -> None:
        with self._lock:
            self.objects[key] = (body, content_type)

    def public_url(self, key: str) -> str:
        return f"memory://{self.bucket}/{key}"

    def with_bucket(self, bucket: str) -> "InMemoryObjectStore":
        if bucket == self.bucket:
            return self
        return InMemoryObjectStore(bucket, self.region, self._buckets, self._lock)
