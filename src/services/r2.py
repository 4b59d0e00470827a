"""Cloudflare R2 (S3-compatible) upload capability."""

from __future__ import annotations

import asyncio
import hashlib
import logging

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from src.config import Settings, get_settings
from src.healthsync.base import Uploader
from src.healthsync.errors import UploadError

logger = logging.getLogger("healthsync.services.r2")


def _make_client(s: Settings) -> "boto3.client":
    return boto3.client(
        "s3",
        endpoint_url=f"https://{s.r2_account_id}.r2.cloudflarestorage.com",
        aws_access_key_id=s.r2_access_key_id,
        aws_secret_access_key=s.r2_secret_access_key,
        config=BotoConfig(
            signature_version="s3v4",
            # Retries are owned by the sync layer.
            retries={"max_attempts": 1, "mode": "standard"},
        ),
        region_name="auto",
    )


def compute_file_hash(data: bytes) -> str:
    """Return hex-encoded SHA-256 hash of file contents."""
    return hashlib.sha256(data).hexdigest()


class R2Uploader(Uploader):
    """Write each file to ``{bucket}/{path}``.

    Args:
        bucket: Target bucket.
        client: boto3 S3 client; built from settings on first upload when omitted.
    """

    def __init__(self, bucket: str, client: "boto3.client | None" = None) -> None:
        self._bucket = bucket
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "R2Uploader":
        s = settings or get_settings()
        return cls(s.r2_bucket_name, _make_client(s))

    def _get_client(self) -> "boto3.client":
        if self._client is None:
            self._client = _make_client(get_settings())
        return self._client

    def _put(self, path: str, data: bytes) -> None:
        self._get_client().put_object(
            Bucket=self._bucket,
            Key=path,
            Body=data,
            ContentType="application/json",
            Metadata={"file_hash": compute_file_hash(data)},
        )

    async def upload_file(self, path: str, data: bytes) -> None:
        try:
            await asyncio.to_thread(self._put, path, data)
        except ClientError as exc:
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            raise UploadError(path, str(exc), status_code=status) from exc
        except BotoCoreError as exc:
            raise UploadError(path, str(exc)) from exc

        logger.info("Uploaded %d bytes to R2 key=%s", len(data), path)
