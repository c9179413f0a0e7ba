"""Dispute evidence file storage.

Files live in S3 (or an S3-compatible endpoint) when credentials are
configured, otherwise under ``EVIDENCE_STORAGE_ROOT`` on local disk. The
returned location (``s3://bucket/key`` or ``file:///...``) is what gets stored
on ``DisputeEvidence.file_path`` and read back at submission time.
"""
from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import unquote, urlparse

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from givingcore.core.config import BaseAppSettings

logger = logging.getLogger(__name__)


class EvidenceFileMissing(Exception):
    """Stored evidence file could not be read back."""


class EvidenceStore:
    def __init__(
        self,
        bucket: str,
        filesystem_root: str | Path,
        endpoint: str | None = None,
        access_key: str | None = None,
        secret_key: str | None = None,
        region: str = "us-east-1",
        client=None,
    ) -> None:
        self.bucket = bucket
        self._filesystem_root = Path(filesystem_root)
        self._client = client
        if self._client is None and (endpoint or access_key):
            self._client = self._initialize_client(endpoint, access_key, secret_key, region)

    @classmethod
    def from_settings(cls, settings: BaseAppSettings) -> EvidenceStore:
        return cls(
            bucket=settings.S3_BUCKET,
            filesystem_root=settings.EVIDENCE_STORAGE_ROOT,
            endpoint=settings.S3_ENDPOINT,
            access_key=settings.S3_ACCESS_KEY,
            secret_key=settings.S3_SECRET_KEY,
            region=settings.S3_REGION,
        )

    def _initialize_client(self, endpoint, access_key, secret_key, region):
        try:
            session = boto3.session.Session(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
            )
            client_kwargs = {
                "service_name": "s3",
                "region_name": region,
                "config": Config(signature_version="s3v4"),
            }
            # Only set endpoint_url for non-AWS S3-compatible services
            if endpoint:
                client_kwargs["endpoint_url"] = endpoint
            return session.client(**client_kwargs)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Falling back to filesystem storage for bucket %s: %s", self.bucket, exc)
            return None

    @property
    def uses_s3(self) -> bool:
        return self._client is not None

    def put(self, data: bytes, key: str, content_type: str = "application/octet-stream") -> str:
        if self._client is not None:
            try:
                self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
                logger.debug("Uploaded %s to bucket %s", key, self.bucket)
                return f"s3://{self.bucket}/{key}"
            except (BotoCoreError, ClientError) as exc:
                logger.exception("S3 upload failed for %s: %s", key, exc)
                raise
        target = self._filesystem_root / key
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug("Stored %s locally at %s", key, target)
        return target.resolve().as_uri()

    def read(self, location: str) -> bytes:
        parsed = urlparse(location)
        if parsed.scheme == "s3":
            if self._client is None:
                raise EvidenceFileMissing(f"S3 is not configured for {location}")
            try:
                obj = self._client.get_object(Bucket=parsed.netloc, Key=parsed.path.lstrip("/"))
                return obj["Body"].read()
            except (BotoCoreError, ClientError) as exc:
                raise EvidenceFileMissing(f"Could not read {location}: {exc}") from exc
        path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(location)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise EvidenceFileMissing(f"Could not read {location}: {exc}") from exc
