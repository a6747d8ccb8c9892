"""
Verification artifacts: ID photo upload and the signed waiver.

Both are written to object storage on a worker thread with a timeout, and
their results are applied to whatever the session looks like when the
upload finishes (the customer may have drawn another stroke meanwhile).
"""
import asyncio
import io
import logging
import os
from datetime import datetime

from PIL import Image, UnidentifiedImageError

from config import get_settings
from storage_service import ID_PHOTO_PREFIX, WAIVER_PREFIX, UploadError, object_key, upload_bytes
from waiver import WaiverRenderError, decode_data_url, render_waiver_png
from wizard import (
    WizardRecord, WizardSession, WizardValidationError,
    begin_id_photo_upload, record_id_photo, record_id_photo_failure,
    record_signature, record_waiver, record_waiver_failure,
)

logger = logging.getLogger(__name__)

# Pillow format -> (extension, content type)
ALLOWED_IMAGE_FORMATS = {
    "PNG": ("png", "image/png"),
    "JPEG": ("jpg", "image/jpeg"),
    "WEBP": ("webp", "image/webp"),
}
EXTENSION_ALIASES = {"jpeg": "jpg"}

ID_PHOTO_FAILED_MESSAGE = "Upload failed. Please try again."
WAIVER_FAILED_MESSAGE = "Could not save your signed waiver. Please sign again."


class ImageValidationError(UploadError):
    """The file is not an acceptable ID photo."""


def validate_image(data: bytes, filename: str = None, max_bytes: int = None) -> tuple:
    """
    Check an uploaded ID photo and work out how to store it.

    Returns:
        (extension, content_type)

    Raises:
        ImageValidationError: empty, too large, or not a PNG/JPEG/WebP image
    """
    max_bytes = max_bytes or get_settings().max_upload_bytes
    if not data:
        raise ImageValidationError("The file is empty")
    if len(data) > max_bytes:
        raise ImageValidationError(f"File too large. Max allowed is {max_bytes // (1024 * 1024)} MB.")

    try:
        with Image.open(io.BytesIO(data)) as img:
            image_format = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise ImageValidationError("The file is not a valid image") from e

    if image_format not in ALLOWED_IMAGE_FORMATS:
        raise ImageValidationError(f"Unsupported image type: {image_format}")

    extension, content_type = ALLOWED_IMAGE_FORMATS[image_format]
    # Keep the customer's extension when it agrees with the content
    name_ext = os.path.splitext(filename or "")[1].lower().lstrip(".")
    if EXTENSION_ALIASES.get(name_ext, name_ext) == extension:
        extension = name_ext
    return extension, content_type


async def _upload(key: str, data: bytes, content_type: str) -> str:
    timeout = get_settings().upload_timeout_seconds
    try:
        return await asyncio.wait_for(asyncio.to_thread(upload_bytes, key, data, content_type), timeout=timeout)
    except asyncio.TimeoutError as e:
        logger.warning(f"Upload of {key} timed out after {timeout}s")
        raise UploadError(f"Upload timed out after {timeout:g} seconds") from e


async def upload_id_photo(record: WizardRecord, filename: str, data: bytes) -> WizardSession:
    """
    Validate and store an ID photo for the session in `record`.

    The session is marked uploading before the first await, so a second
    upload for the same session is rejected until this one finishes.
    Failures leave the photo in the failed state and can be retried.

    Raises:
        UploadInProgressError: another upload is running for this session
    """
    record.session = begin_id_photo_upload(record.session)

    try:
        extension, content_type = validate_image(data, filename)
        url = await _upload(object_key(ID_PHOTO_PREFIX, extension), data, content_type)
    except ImageValidationError as e:
        record.session = record_id_photo_failure(record.session, str(e))
        return record.session
    except UploadError as e:
        logger.error(f"ID photo upload failed: {e}")
        record.session = record_id_photo_failure(record.session, ID_PHOTO_FAILED_MESSAGE)
        return record.session
    except BaseException:
        # Never leave the session stuck in uploading, even on cancellation
        record.session = record_id_photo_failure(record.session, ID_PHOTO_FAILED_MESSAGE)
        raise

    record.session = record_id_photo(record.session, url)
    return record.session


async def capture_signature(record: WizardRecord, signature_data: str, now: datetime = None) -> WizardSession:
    """
    Keep a finished signature stroke and re-render and upload the waiver.

    Every stroke produces a new waiver document. If strokes overlap, only
    the newest one's waiver is recorded.

    Raises:
        WizardValidationError: the signature is not an image data URL
    """
    try:
        decode_data_url(signature_data)
    except ValueError as e:
        raise WizardValidationError({"signature_data": str(e)}) from e

    record.session = record_signature(record.session, signature_data)
    record.waiver_seq += 1
    seq = record.waiver_seq

    settings = get_settings()
    signed_at = now or datetime.utcnow()
    try:
        png = await asyncio.to_thread(
            render_waiver_png, settings.shop_name, record.session.name, signed_at, signature_data
        )
        url = await _upload(object_key(WAIVER_PREFIX, "png"), png, "image/png")
    except (WaiverRenderError, UploadError) as e:
        logger.error(f"Waiver upload failed: {e}")
        if seq == record.waiver_seq:
            record.session = record_waiver_failure(record.session, WAIVER_FAILED_MESSAGE)
        return record.session

    if seq == record.waiver_seq and record.session.signature_data:
        record.session = record_waiver(record.session, url)
    else:
        logger.info(f"Discarding superseded waiver {url}")
    return record.session
