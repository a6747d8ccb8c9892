"""
Admin operations for bikes currently out on test rides.
"""
import asyncio
import logging
from typing import List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

import db_service
from config import get_settings
from db_models import BIKE_MODELS, TestDrive, TestDriveStatus, NotificationType, DeliveryStatus
from sms_service import get_sms_service
from stripe_service import cancel_payment_intent
from waiver import generate_waiver_html

logger = logging.getLogger(__name__)


def filter_test_drives(test_drives: List[TestDrive], query: Optional[str]) -> List[TestDrive]:
    """
    Case-insensitive substring search over customer name, phone and bike.

    An empty or whitespace-only query returns every drive.
    """
    q = (query or "").strip().lower()
    if not q:
        return list(test_drives)

    def matches(drive: TestDrive) -> bool:
        customer = drive.customer
        fields = [
            customer.name if customer else "",
            customer.phone if customer else "",
            drive.bike_model or "",
        ]
        return any(q in (field or "").lower() for field in fields)

    return [drive for drive in test_drives if matches(drive)]


def serialize_test_drive(drive: TestDrive) -> dict:
    customer = drive.customer
    return {
        "id": drive.id,
        "bike_model": drive.bike_model,
        "bike_name": BIKE_MODELS.get(drive.bike_model, drive.bike_model),
        "start_time": drive.start_time.isoformat() if drive.start_time else None,
        "end_time": drive.end_time.isoformat() if drive.end_time else None,
        "duration_minutes": drive.duration_minutes,
        "status": drive.status.value,
        "stripe_payment_intent_id": drive.stripe_payment_intent_id,
        "authorization_amount_cents": drive.authorization_amount_cents,
        "created_at": drive.created_at.isoformat() if drive.created_at else None,
        "customer": {
            "id": customer.id,
            "name": customer.name,
            "phone": customer.phone,
            "email": customer.email,
            "id_photo_url": customer.id_photo_url,
            "waiver_url": customer.waiver_url,
            "waiver_signed": customer.waiver_signed,
        } if customer else None,
    }


async def complete_and_release(db: Session, test_drive_id: int, sms_service=None) -> dict:
    """
    Mark a bike returned.

    Completing an unknown or already completed drive succeeds without
    side effects. When the drive was active, the authorization hold is
    released (if enabled) and the completion SMS is sent; neither can fail
    the completion.

    Raises:
        PersistenceError: the status update failed
    """
    settings = get_settings()
    before = db_service.get_test_drive(db, test_drive_id)
    was_active = before is not None and before.status == TestDriveStatus.ACTIVE

    test_drive = db_service.complete_test_drive(db, test_drive_id)

    result = {
        "success": True,
        "test_drive_id": test_drive_id,
        "status": test_drive.status.value if test_drive else None,
        "hold_released": None,
        "completion_sms_sent": None,
    }
    if not was_active:
        logger.info(f"Test drive {test_drive_id} was not active; nothing else to do")
        return result

    logger.info(f"Test drive {test_drive_id} completed")

    if settings.release_hold_on_return and test_drive.stripe_payment_intent_id:
        release = await asyncio.to_thread(cancel_payment_intent, test_drive.stripe_payment_intent_id)
        result["hold_released"] = release.get("success", False)
        if not release.get("success"):
            logger.warning(
                f"Hold {test_drive.stripe_payment_intent_id} for test drive {test_drive_id} "
                f"not released: {release.get('error')}"
            )

    if test_drive.customer:
        result["completion_sms_sent"] = await _send_completion(db, test_drive, sms_service)

    return result


async def _send_completion(db: Session, test_drive: TestDrive, sms_service=None) -> bool:
    if sms_service is None:
        sms_service = get_sms_service()

    phone = test_drive.customer.phone
    try:
        response = await sms_service.send_test_ride_completion(phone)
    except Exception as e:
        logger.error(f"Completion SMS to {phone} raised: {e}")
        response = None

    sent = bool(response and response.success)
    db_service.log_notification(
        db,
        customer_phone=phone,
        message_content=sms_service.completion_message(),
        message_type=NotificationType.COMPLETION,
        delivery_status=DeliveryStatus.SENT if sent else DeliveryStatus.FAILED,
        customer_id=test_drive.customer_id,
        test_drive_id=test_drive.id,
        provider=response.provider if response else sms_service.provider_name,
        provider_message_id=response.message_id if response else None,
        error=None if sent else (response.error if response else "SMS dispatch raised"),
    )
    return sent


def render_waiver_document(test_drive: TestDrive) -> str:
    """The customer's signed waiver as HTML, dated in shop local time."""
    settings = get_settings()
    customer = test_drive.customer
    signed_at = customer.submitted_at or customer.created_at or test_drive.start_time
    if signed_at.tzinfo is None:
        signed_at = signed_at.replace(tzinfo=ZoneInfo("UTC"))
    return generate_waiver_html(
        settings.shop_name,
        customer.name,
        customer.phone,
        signed_at.astimezone(ZoneInfo(settings.shop_timezone)),
        customer.signature_data,
    )
