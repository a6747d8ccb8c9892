"""
Object storage for verification artifacts (ID photos and signed waivers).

S3-compatible bucket with public read. Keys are write-once:
id-photos/<epoch-ms>.<ext> and waivers/<epoch-ms>.png.
"""
import logging
import time

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import get_settings

logger = logging.getLogger(__name__)

ID_PHOTO_PREFIX = "id-photos"
WAIVER_PREFIX = "waivers"


class UploadError(Exception):
    """An artifact could not be written to object storage."""


def _client():
    settings = get_settings()
    cfg = Config(
        signature_version="s3v4",
        s3={"addressing_style": "path" if settings.storage_endpoint_url else "auto"},
    )
    return boto3.client(
        "s3",
        region_name=settings.storage_region,
        endpoint_url=settings.storage_endpoint_url or None,
        config=cfg,
    )


def object_key(prefix: str, extension: str, now_ms: int = None) -> str:
    """Timestamped key, e.g. id-photos/1718035200123.jpg"""
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    extension = (extension or "").lower().lstrip(".")
    return f"{prefix}/{now_ms}.{extension}" if extension else f"{prefix}/{now_ms}"


def public_url(key: str) -> str:
    settings = get_settings()
    bucket = settings.storage_bucket
    if settings.storage_public_base_url:
        return f"{settings.storage_public_base_url.rstrip('/')}/{key}"
    if settings.storage_endpoint_url:
        return f"{settings.storage_endpoint_url.rstrip('/')}/{bucket}/{key}"
    return f"https://{bucket}.s3.{settings.storage_region}.amazonaws.com/{key}"


def upload_bytes(key: str, data: bytes, content_type: str) -> str:
    """
    Write an object and return its public URL.

    Blocking (boto3); callers in async code run it on a worker thread.

    Raises:
        UploadError: the bucket rejected the write or was unreachable
    """
    settings = get_settings()
    try:
        _client().put_object(
            Bucket=settings.storage_bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            CacheControl="max-age=3600",
        )
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Upload of {key} to {settings.storage_bucket} failed: {e}")
        raise UploadError(f"Upload failed: {e}") from e

    logger.info(f"Uploaded {key} ({len(data)} bytes) to {settings.storage_bucket}")
    return public_url(key)
