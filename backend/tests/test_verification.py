"""
Tests for the verification step: ID photo upload, signature capture,
waiver rendering and object storage.

Object storage is mocked at verification.upload_bytes (or the boto3 client
for the storage tests).
"""
import asyncio
import io
import pytest
from datetime import datetime
from unittest.mock import patch, AsyncMock, MagicMock

from botocore.exceptions import ClientError, EndpointConnectionError
from PIL import Image

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

import storage_service
from storage_service import UploadError, object_key, public_url, upload_bytes
from verification import (
    ImageValidationError,
    ID_PHOTO_FAILED_MESSAGE,
    WAIVER_FAILED_MESSAGE,
    capture_signature,
    upload_id_photo,
    validate_image,
)
from waiver import WaiverRenderError, decode_data_url, generate_waiver_html, render_waiver_png, waiver_paragraphs
from wizard import (
    WizardRecord,
    WizardSession,
    WizardStep,
    UploadStatus,
    UploadInProgressError,
    WizardValidationError,
    begin_id_photo_upload,
)


def fake_upload(key, data, content_type):
    return f"https://cdn.example.com/customer-files/{key}"


def verification_record() -> WizardRecord:
    return WizardRecord(session=WizardSession(
        step=WizardStep.VERIFICATION,
        name="Alex Rider",
        phone="5551112222",
        bike_model="aventon",
        duration_minutes=10,
    ))


class TestValidateImage:
    """ID photo checks before upload."""

    def test_png(self, png_bytes):
        assert validate_image(png_bytes, "license.png") == ("png", "image/png")

    def test_jpeg_keeps_customer_extension(self, jpeg_bytes):
        assert validate_image(jpeg_bytes, "license.JPEG") == ("jpeg", "image/jpeg")

    def test_extension_follows_content(self, jpeg_bytes):
        assert validate_image(jpeg_bytes, "license.png") == ("jpg", "image/jpeg")

    def test_empty_file(self):
        with pytest.raises(ImageValidationError):
            validate_image(b"", "license.png")

    def test_too_large(self, png_bytes):
        with pytest.raises(ImageValidationError, match="too large"):
            validate_image(png_bytes, "license.png", max_bytes=10)

    def test_not_an_image(self):
        with pytest.raises(ImageValidationError, match="not a valid image"):
            validate_image(b"%PDF-1.4 not an image", "license.pdf")

    def test_unsupported_format(self):
        buffer = io.BytesIO()
        Image.new("RGB", (8, 8)).save(buffer, format="GIF")
        with pytest.raises(ImageValidationError, match="Unsupported"):
            validate_image(buffer.getvalue(), "license.gif")


class TestUploadIdPhoto:
    """ID photo upload."""

    @pytest.mark.asyncio
    async def test_success(self, png_bytes):
        record = verification_record()
        with patch("verification.upload_bytes", side_effect=fake_upload) as mock_upload:
            session = await upload_id_photo(record, "license.png", png_bytes)

        key, data, content_type = mock_upload.call_args.args
        assert key.startswith("id-photos/") and key.endswith(".png")
        assert content_type == "image/png"
        assert session.id_photo_status == UploadStatus.SUCCESS
        assert session.id_photo_url == f"https://cdn.example.com/customer-files/{key}"
        assert record.session is session

    @pytest.mark.asyncio
    async def test_storage_failure_can_be_retried(self, png_bytes):
        """A failed upload leaves no URL and the next attempt can succeed."""
        record = verification_record()
        with patch("verification.upload_bytes", side_effect=UploadError("Upload failed: AccessDenied")):
            session = await upload_id_photo(record, "license.png", png_bytes)

        assert session.id_photo_status == UploadStatus.FAILED
        assert session.id_photo_url is None
        assert session.error == ID_PHOTO_FAILED_MESSAGE

        with patch("verification.upload_bytes", side_effect=fake_upload):
            session = await upload_id_photo(record, "license.png", png_bytes)
        assert session.id_photo_status == UploadStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_invalid_image_is_a_failed_upload(self):
        record = verification_record()
        with patch("verification.upload_bytes") as mock_upload:
            session = await upload_id_photo(record, "license.txt", b"hello")
        mock_upload.assert_not_called()
        assert session.id_photo_status == UploadStatus.FAILED
        assert session.error == "The file is not a valid image"

    @pytest.mark.asyncio
    async def test_upload_in_progress_rejected(self, png_bytes):
        record = verification_record()
        record.session = begin_id_photo_upload(record.session)
        with patch("verification.upload_bytes") as mock_upload:
            with pytest.raises(UploadInProgressError):
                await upload_id_photo(record, "license.png", png_bytes)
        mock_upload.assert_not_called()

    @pytest.mark.parametrize("error", [asyncio.CancelledError, RuntimeError])
    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_block_retry(self, png_bytes, error):
        record = verification_record()
        with patch("verification._upload", AsyncMock(side_effect=error)):
            with pytest.raises(error):
                await upload_id_photo(record, "license.png", png_bytes)

        assert record.session.id_photo_status == UploadStatus.FAILED

        with patch("verification.upload_bytes", side_effect=fake_upload):
            session = await upload_id_photo(record, "license.png", png_bytes)
        assert session.id_photo_status == UploadStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_timeout(self, png_bytes, monkeypatch):
        monkeypatch.setenv("UPLOAD_TIMEOUT_SECONDS", "0.01")

        def slow_upload(key, data, content_type):
            import time
            time.sleep(0.3)
            return fake_upload(key, data, content_type)

        record = verification_record()
        with patch("verification.upload_bytes", side_effect=slow_upload):
            session = await upload_id_photo(record, "license.png", png_bytes)
        assert session.id_photo_status == UploadStatus.FAILED


class TestCaptureSignature:
    """Signature strokes and waiver upload."""

    @pytest.mark.asyncio
    async def test_stroke_uploads_waiver(self, signature_data_url):
        record = verification_record()
        with patch("verification.upload_bytes", side_effect=fake_upload) as mock_upload:
            session = await capture_signature(record, signature_data_url, now=datetime(2026, 6, 1, 17, 0))

        key, data, content_type = mock_upload.call_args.args
        assert key.startswith("waivers/") and key.endswith(".png")
        assert content_type == "image/png"
        assert data.startswith(b"\x89PNG")
        assert session.signature_data == signature_data_url
        assert session.waiver_status == UploadStatus.SUCCESS
        assert session.waiver_url.endswith(key)
        assert record.waiver_seq == 1

    @pytest.mark.asyncio
    async def test_invalid_data_url_rejected(self):
        record = verification_record()
        with pytest.raises(WizardValidationError):
            await capture_signature(record, "not a data url")
        assert record.session.signature_data is None

    @pytest.mark.asyncio
    async def test_upload_failure(self, signature_data_url):
        record = verification_record()
        with patch("verification.upload_bytes", side_effect=UploadError("Upload failed")):
            session = await capture_signature(record, signature_data_url)

        assert session.waiver_status == UploadStatus.FAILED
        assert session.waiver_url is None
        assert session.signature_data == signature_data_url
        assert session.error == WAIVER_FAILED_MESSAGE

    @pytest.mark.asyncio
    async def test_superseded_stroke_is_discarded(self, signature_data_url):
        """A waiver finishing after a newer stroke started does not overwrite it."""
        record = verification_record()

        def upload_while_customer_draws(key, data, content_type):
            record.waiver_seq += 1
            return fake_upload(key, data, content_type)

        with patch("verification.upload_bytes", side_effect=upload_while_customer_draws):
            session = await capture_signature(record, signature_data_url)

        assert session.waiver_url is None
        assert session.waiver_status == UploadStatus.UPLOADING

    @pytest.mark.asyncio
    async def test_cleared_signature_discards_upload(self, signature_data_url):
        record = verification_record()

        def upload_then_clear(key, data, content_type):
            record.session = record.session.model_copy(update={"signature_data": None})
            record.waiver_seq += 1
            return fake_upload(key, data, content_type)

        with patch("verification.upload_bytes", side_effect=upload_then_clear):
            session = await capture_signature(record, signature_data_url)
        assert session.waiver_url is None

    @pytest.mark.asyncio
    async def test_render_failure(self, signature_data_url):
        record = verification_record()
        with patch("verification.render_waiver_png", side_effect=WaiverRenderError("no fonts")):
            with patch("verification.upload_bytes") as mock_upload:
                session = await capture_signature(record, signature_data_url)
        mock_upload.assert_not_called()
        assert session.waiver_status == UploadStatus.FAILED


class TestWaiverDocument:
    """Waiver rendering."""

    def test_png_page(self, signature_data_url):
        png = render_waiver_png("San Diego Electric Bike", "Alex Rider", datetime(2026, 6, 1, 17, 0), signature_data_url)
        with Image.open(io.BytesIO(png)) as img:
            assert img.format == "PNG"
            assert img.size == (1200, 1600)

    def test_unreadable_signature_leaves_empty_box(self):
        png = render_waiver_png("Shop", "Alex", datetime(2026, 6, 1), "data:image/png;base64,AAAA")
        assert png.startswith(b"\x89PNG")

    def test_paragraphs_name_the_shop(self):
        paragraphs = waiver_paragraphs("San Diego Electric Bike")
        assert len(paragraphs) == 5
        assert "San Diego Electric Bike" in paragraphs[3]

    def test_decode_data_url(self):
        assert decode_data_url("data:image/png;base64,aGVsbG8=") == b"hello"

    @pytest.mark.parametrize("value", ["", "hello", "data:text/plain;base64,aGk=", "data:image/png,raw", "data:image/png;base64,@@@"])
    def test_decode_rejects(self, value):
        with pytest.raises(ValueError):
            decode_data_url(value)

    def test_html_escapes_customer_input(self):
        page = generate_waiver_html(
            "Shop & Co",
            "<script>alert(1)</script>",
            "555",
            datetime(2026, 6, 1, 17, 0),
            'data:image/png;base64,AAAA" onerror="x',
        )
        assert "<script>" not in page
        assert "&lt;script&gt;" in page
        assert "Shop &amp; Co" in page
        assert 'onerror="x' not in page


class TestObjectStorage:
    """S3-compatible storage."""

    def test_object_key(self):
        assert object_key("id-photos", ".JPG", now_ms=1717261200000) == "id-photos/1717261200000.jpg"

    def test_public_url_prefers_public_base(self, monkeypatch):
        monkeypatch.setenv("STORAGE_PUBLIC_BASE_URL", "https://cdn.example.com/customer-files/")
        assert public_url("waivers/1.png") == "https://cdn.example.com/customer-files/waivers/1.png"

    def test_public_url_custom_endpoint(self, monkeypatch):
        monkeypatch.setenv("STORAGE_ENDPOINT_URL", "https://abc.supabase.co/storage/v1/s3")
        assert public_url("waivers/1.png") == "https://abc.supabase.co/storage/v1/s3/customer-files/waivers/1.png"

    def test_public_url_default(self):
        assert public_url("waivers/1.png") == "https://customer-files.s3.us-west-2.amazonaws.com/waivers/1.png"

    def test_upload_bytes(self):
        client = MagicMock()
        with patch("storage_service._client", return_value=client):
            url = upload_bytes("waivers/1.png", b"png", "image/png")

        kwargs = client.put_object.call_args.kwargs
        assert kwargs["Bucket"] == "customer-files"
        assert kwargs["Key"] == "waivers/1.png"
        assert kwargs["ContentType"] == "image/png"
        assert url.endswith("/waivers/1.png")

    def test_rejected_write(self):
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {"Error": {"Code": "AccessDenied", "Message": "Access Denied"}}, "PutObject"
        )
        with patch("storage_service._client", return_value=client):
            with pytest.raises(UploadError):
                upload_bytes("waivers/1.png", b"png", "image/png")

    def test_unreachable_endpoint(self):
        client = MagicMock()
        client.put_object.side_effect = EndpointConnectionError(endpoint_url="https://s3.example.com")
        with patch.object(storage_service, "_client", return_value=client):
            with pytest.raises(UploadError):
                upload_bytes("waivers/1.png", b"png", "image/png")
