from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pipeline.errors import ProviderError
from providers.base import download_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredObject:
    key: str
    url: str
    internal_url: str


@dataclass(frozen=True)
class StorageConfig:
    backend: str
    bucket: str
    region: str
    public_base_url: str
    local_dir: str


def load_storage_config() -> StorageConfig:
    return StorageConfig(
        backend=os.getenv("STORAGE_BACKEND", "s3").strip().lower(),
        bucket=os.getenv("AWS_S3_BUCKET", "").strip(),
        region=os.getenv("AWS_REGION", "ap-south-1").strip(),
        public_base_url=os.getenv("CLOUDFRONT_BASE_URL", "").strip().rstrip("/"),
        local_dir=os.getenv("ARTIFACTS_BASE_DIR", "out"),
    )


def media_key(organization_id, folder: str, entity_id, filename: str) -> str:
    return f"organizations/{organization_id}/{folder}/{entity_id}/{filename}"


class S3Storage:
    provider_type = "s3"

    def __init__(self, config: StorageConfig) -> None:
        self.bucket = config.bucket
        self.region = config.region
        self.public_base_url = config.public_base_url
        self.client = boto3.client("s3", region_name=self.region) if self.region else boto3.client("s3")

    def _public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    def locate(self, key: str) -> StoredObject:
        return StoredObject(key=key, url=self._public_url(key), internal_url=f"s3://{self.bucket}/{key}")

    def upload_bytes(self, key: str, data: bytes, content_type: str) -> StoredObject:
        if not self.bucket:
            raise ProviderError(code="storage_not_configured", message="AWS_S3_BUCKET is not set", provider="s3")
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise ProviderError(code="upload_failed", message=str(exc)[:300], provider="s3", retryable=True) from exc
        logger.info("uploaded s3://%s/%s (%s bytes)", self.bucket, key, len(data))
        return self.locate(key)

    def upload_file(self, key: str, path: Path, content_type: str) -> StoredObject:
        if not self.bucket:
            raise ProviderError(code="storage_not_configured", message="AWS_S3_BUCKET is not set", provider="s3")
        try:
            self.client.upload_file(str(path), self.bucket, key, ExtraArgs={"ContentType": content_type})
        except (BotoCoreError, ClientError) as exc:
            raise ProviderError(code="upload_failed", message=str(exc)[:300], provider="s3", retryable=True) from exc
        logger.info("uploaded s3://%s/%s", self.bucket, key)
        return self.locate(key)

    def upload_from_url(self, key: str, url: str, content_type: str) -> StoredObject:
        return self.upload_bytes(key, download_bytes(url, provider="s3"), content_type)


class LocalStorage:
    """Writes under ARTIFACTS_BASE_DIR; used in development and tests."""

    provider_type = "local"

    def __init__(self, config: StorageConfig) -> None:
        self.base_path = Path(config.local_dir).expanduser().resolve()
        self.public_base_url = config.public_base_url

    def locate(self, key: str) -> StoredObject:
        path = self.base_path / key
        url = f"{self.public_base_url}/{key}" if self.public_base_url else path.as_uri()
        return StoredObject(key=key, url=url, internal_url=str(path))

    def upload_bytes(self, key: str, data: bytes, content_type: str) -> StoredObject:
        target = self.base_path / key
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return self.locate(key)

    def upload_file(self, key: str, path: Path, content_type: str) -> StoredObject:
        return self.upload_bytes(key, Path(path).read_bytes(), content_type)

    def upload_from_url(self, key: str, url: str, content_type: str) -> StoredObject:
        return self.upload_bytes(key, download_bytes(url, provider="local"), content_type)


def load_storage(config: StorageConfig | None = None):
    config = config or load_storage_config()
    if config.backend == "local":
        return LocalStorage(config)
    return S3Storage(config)
