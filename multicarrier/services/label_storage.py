"""
Label Storage - S3-compatible object storage for shipping labels

Labels land at labels/<tracking_number>.pdf.
Supports AWS S3, Cloudflare R2, MinIO, and other S3-compatible services.
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from multicarrier.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

LABEL_FOLDER = "labels"
PDF_MAGIC = b"%PDF"


@dataclass
class UploadResult:
    """Result of a label upload."""
    success: bool
    url: Optional[str] = None
    key: Optional[str] = None
    error: Optional[str] = None
    size_bytes: Optional[int] = None


class LabelStorage:
    """Writes carrier label PDFs to the configured bucket."""

    def __init__(self, settings: Optional[Settings] = None, client=None):
        self._settings = settings or default_settings
        self._client = client
        self._bucket = self._settings.S3_BUCKET
        self._region = self._settings.S3_REGION

    def is_configured(self) -> bool:
        return bool(self._bucket)

    @property
    def client(self):
        """Lazy-load S3 client."""
        if self._client is None:
            config = Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "standard"},
            )
            client_kwargs = {
                "service_name": "s3",
                "region_name": self._region,
                "aws_access_key_id": self._settings.S3_ACCESS_KEY or None,
                "aws_secret_access_key": self._settings.S3_SECRET_KEY or None,
                "config": config,
            }
            # Custom endpoint for R2/MinIO
            if self._settings.S3_ENDPOINT:
                client_kwargs["endpoint_url"] = self._settings.S3_ENDPOINT
            self._client = boto3.client(**client_kwargs)
        return self._client

    def public_url(self, key: str) -> str:
        if self._settings.S3_ENDPOINT:
            endpoint = self._settings.S3_ENDPOINT.rstrip("/")
            return f"{endpoint}/{self._bucket}/{key}"
        return f"https://{self._bucket}.s3.{self._region}.amazonaws.com/{key}"

    @staticmethod
    def label_key(tracking_number: str) -> str:
        safe = re.sub(r"[^A-Za-z0-9_-]", "", tracking_number)
        return f"{LABEL_FOLDER}/{safe}.pdf"

    async def store_label(self, tracking_number: str, content: bytes) -> UploadResult:
        """Upload a label PDF. Never raises; failures come back in the result."""
        if not self.is_configured():
            return UploadResult(success=False, error="Label storage not configured")
        if not content:
            return UploadResult(success=False, error="Empty label content")
        if not content.startswith(PDF_MAGIC):
            logger.warning(f"Label for {tracking_number} does not look like a PDF")

        key = self.label_key(tracking_number)
        try:
            self.client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content,
                ContentType="application/pdf",
                CacheControl="private, max-age=86400",
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "Unknown")
            error_msg = e.response.get("Error", {}).get("Message", str(e))
            logger.error(f"Label upload failed: {error_code} - {error_msg}")
            return UploadResult(success=False, key=key, error=f"Upload failed: {error_msg}")
        except BotoCoreError as e:
            logger.error(f"Label upload error: {e}")
            return UploadResult(success=False, key=key, error=f"Upload failed: {e}")

        url = self.public_url(key)
        logger.info(f"Stored label: {key}")
        return UploadResult(success=True, url=url, key=key, size_bytes=len(content))
