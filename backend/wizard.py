"""
Intake wizard for walk-in test rides.

Contact -> Bike Selection -> Verification -> Payment -> Success, with Back
from any of steps 2-4. The session is an immutable value: every reducer
takes a WizardSession and returns a new one, so the transition table can be
exercised without HTTP or a database. Only IntakeWizard.commit touches the
outside world, and it is the only way to reach Success.
"""
import enum
import logging
import re
import secrets
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

import db_service
from audit_log import log_audit_event, log_error
from config import get_settings
from db_models import BIKE_MODELS, AuditLogEvent, NotificationType, DeliveryStatus, ErrorSeverity
from models import BookingSummary, CustomerFields, TestDriveFields
from sms_service import get_sms_service

logger = logging.getLogger(__name__)


PHONE_PATTERN = re.compile(r"^\+?[\d\s\-\(\)]{10,}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CONFIRMATION_SENT_MESSAGE = "Confirmation sent!"
CONFIRMATION_FAILED_MESSAGE = "Message failed to send. Please take note of your return time above."


class WizardStep(int, enum.Enum):
    CONTACT = 1
    BIKE_SELECTION = 2
    VERIFICATION = 3
    PAYMENT = 4
    SUCCESS = 5


class UploadStatus(str, enum.Enum):
    EMPTY = "empty"
    UPLOADING = "uploading"
    SUCCESS = "success"
    FAILED = "failed"


class PaymentOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class WizardSession(BaseModel):
    """Everything the customer has entered so far."""
    step: WizardStep = WizardStep.CONTACT

    # Contact
    name: str = ""
    phone: str = ""
    email: Optional[str] = None

    # Bike selection
    bike_model: Optional[str] = None
    duration_minutes: Optional[int] = None

    # Verification
    id_photo_url: Optional[str] = None
    id_photo_status: UploadStatus = UploadStatus.EMPTY
    signature_data: Optional[str] = None
    waiver_url: Optional[str] = None
    waiver_status: UploadStatus = UploadStatus.EMPTY
    waiver_signed: bool = False
    submitted_at: Optional[datetime] = None
    submission_ip: Optional[str] = None

    # Payment
    payment_intent_id: Optional[str] = None
    payment_status: Optional[PaymentOutcome] = None

    # Last error shown on the current step
    error: Optional[str] = None

    # Only set on the Success step
    completed_booking: Optional[BookingSummary] = None

    class Config:
        frozen = True


# ============== ERRORS ==============

class WizardValidationError(Exception):
    """A step's input did not validate. Nothing was changed."""

    def __init__(self, errors: Dict[str, str], message: str = "Please correct the highlighted fields."):
        super().__init__(message)
        self.message = message
        self.errors = errors


class WizardStepError(Exception):
    """The action is not available on the session's current step."""


class UploadInProgressError(Exception):
    """An ID photo upload is already running for this session."""


class BookingCommitError(Exception):
    """
    The booking could not be saved. `session` is the Payment step session
    carrying the error, ready for a retry.
    """

    def __init__(self, message: str, session: WizardSession):
        super().__init__(message)
        self.message = message
        self.session = session


# ============== GUARDS ==============

def validate_contact(session: WizardSession) -> Dict[str, str]:
    errors = {}
    if not session.name.strip():
        errors["name"] = "Name is required"
    if not session.phone.strip():
        errors["phone"] = "Phone number is required"
    elif not PHONE_PATTERN.match(session.phone.strip()):
        errors["phone"] = "Please enter a valid phone number"
    if session.email and not EMAIL_PATTERN.match(session.email.strip()):
        errors["email"] = "Please enter a valid email address"
    return errors


def validate_bike_selection(session: WizardSession) -> Dict[str, str]:
    if not session.bike_model:
        return {"bike_model": "Please select a bike"}
    if session.bike_model not in BIKE_MODELS:
        return {"bike_model": f"Unknown bike: {session.bike_model}"}
    return {}


def validate_verification(session: WizardSession) -> Dict[str, str]:
    errors = {}
    if not session.id_photo_url or session.id_photo_status != UploadStatus.SUCCESS:
        errors["id_photo_url"] = "Please upload a photo of your ID"
    if not session.signature_data:
        errors["signature_data"] = "Please sign the waiver"
    if not session.waiver_url or session.waiver_status != UploadStatus.SUCCESS:
        errors["waiver_url"] = "Your signed waiver has not been saved yet"
    if not session.waiver_signed:
        errors["waiver_signed"] = "Please read and accept the waiver"
    return errors


def validate_payment(session: WizardSession) -> Dict[str, str]:
    if session.payment_status != PaymentOutcome.COMPLETED:
        return {"payment_status": "Payment authorization has not completed"}
    return {}


def _require_step(session: WizardSession, step: WizardStep):
    if session.step != step:
        raise WizardStepError(
            f"This action belongs to the {step.name.replace('_', ' ').title()} step; "
            f"the session is on {session.step.name.replace('_', ' ').title()}"
        )


def _guarded(session: WizardSession, step: WizardStep) -> WizardSession:
    """Advance from `step` to the next one if its guard and every earlier guard pass."""
    errors = {}
    for earlier in WizardStep:
        if earlier > step:
            break
        errors.update(STEP_GUARDS[earlier](session))
    if errors:
        raise WizardValidationError(errors)
    return session.model_copy(update={"step": WizardStep(step + 1), "error": None})


# ============== REDUCERS ==============

def submit_contact(session: WizardSession, name: str, phone: str, email: Optional[str] = None) -> WizardSession:
    _require_step(session, WizardStep.CONTACT)
    email = email.strip() if email and email.strip() else None
    updated = session.model_copy(update={"name": (name or "").strip(), "phone": (phone or "").strip(), "email": email})
    return _guarded(updated, WizardStep.CONTACT)


def select_bike(session: WizardSession, bike_model: str, duration_minutes: Optional[int] = None) -> WizardSession:
    _require_step(session, WizardStep.BIKE_SELECTION)
    updated = session.model_copy(update={
        "bike_model": bike_model or None,
        "duration_minutes": duration_minutes or session.duration_minutes,
    })
    return _guarded(updated, WizardStep.BIKE_SELECTION)


def begin_id_photo_upload(session: WizardSession) -> WizardSession:
    _require_step(session, WizardStep.VERIFICATION)
    if session.id_photo_status == UploadStatus.UPLOADING:
        raise UploadInProgressError("An ID photo upload is already in progress")
    return session.model_copy(update={"id_photo_status": UploadStatus.UPLOADING, "error": None})


def record_id_photo(session: WizardSession, id_photo_url: str) -> WizardSession:
    return session.model_copy(update={
        "id_photo_url": id_photo_url,
        "id_photo_status": UploadStatus.SUCCESS,
        "error": None,
    })


def record_id_photo_failure(session: WizardSession, message: str) -> WizardSession:
    return session.model_copy(update={
        "id_photo_url": None,
        "id_photo_status": UploadStatus.FAILED,
        "error": message,
    })


def record_signature(session: WizardSession, signature_data: str) -> WizardSession:
    """A stroke ended: keep the drawing, its waiver is being re-rendered."""
    _require_step(session, WizardStep.VERIFICATION)
    if not signature_data:
        raise WizardValidationError({"signature_data": "Signature is empty"})
    return session.model_copy(update={
        "signature_data": signature_data,
        "waiver_status": UploadStatus.UPLOADING,
    })


def record_waiver(session: WizardSession, waiver_url: str) -> WizardSession:
    return session.model_copy(update={
        "waiver_url": waiver_url,
        "waiver_status": UploadStatus.SUCCESS,
        "error": None,
    })


def record_waiver_failure(session: WizardSession, message: str) -> WizardSession:
    return session.model_copy(update={"waiver_status": UploadStatus.FAILED, "error": message})


def clear_signature(session: WizardSession) -> WizardSession:
    _require_step(session, WizardStep.VERIFICATION)
    return session.model_copy(update={
        "signature_data": None,
        "waiver_url": None,
        "waiver_status": UploadStatus.EMPTY,
    })


def accept_waiver(session: WizardSession, agreed: bool, now: datetime, ip_address: Optional[str] = None) -> WizardSession:
    _require_step(session, WizardStep.VERIFICATION)
    if not agreed:
        raise WizardValidationError({"waiver_signed": "You must agree to the waiver to continue"})
    return session.model_copy(update={
        "waiver_signed": True,
        "submitted_at": now,
        "submission_ip": ip_address,
    })


def continue_from_verification(session: WizardSession) -> WizardSession:
    _require_step(session, WizardStep.VERIFICATION)
    advanced = _guarded(session, WizardStep.VERIFICATION)
    # Each visit to Payment places its own hold
    return advanced.model_copy(update={"payment_intent_id": None, "payment_status": None})


def attach_payment_intent(session: WizardSession, payment_intent_id: str) -> WizardSession:
    """The Payment step mounted and created a new authorization."""
    _require_step(session, WizardStep.PAYMENT)
    return session.model_copy(update={
        "payment_intent_id": payment_intent_id,
        "payment_status": None,
        "error": None,
    })


def record_payment_success(session: WizardSession) -> WizardSession:
    _require_step(session, WizardStep.PAYMENT)
    return session.model_copy(update={"payment_status": PaymentOutcome.COMPLETED, "error": None})


def record_payment_failure(session: WizardSession, message: str) -> WizardSession:
    _require_step(session, WizardStep.PAYMENT)
    return session.model_copy(update={"payment_status": PaymentOutcome.FAILED, "error": message})


def record_commit_failure(session: WizardSession, message: str) -> WizardSession:
    """The hold is in place but saving failed; stay on Payment so commit can be retried."""
    return session.model_copy(update={"step": WizardStep.PAYMENT, "error": message})


def complete_booking(session: WizardSession, summary: BookingSummary) -> WizardSession:
    _require_step(session, WizardStep.PAYMENT)
    errors = validate_payment(session)
    if errors:
        raise WizardValidationError(errors)
    return WizardSession(step=WizardStep.SUCCESS, completed_booking=summary)


def go_back(session: WizardSession) -> WizardSession:
    if not WizardStep.BIKE_SELECTION <= session.step <= WizardStep.PAYMENT:
        raise WizardStepError(f"Cannot go back from {session.step.name.replace('_', ' ').title()}")
    return session.model_copy(update={"step": WizardStep(session.step - 1), "error": None})


def start_over(session: Optional[WizardSession] = None) -> WizardSession:
    """Empty Contact session. Bookings and holds already made are untouched."""
    return WizardSession()


# ============== TRANSITION TABLES ==============

# Guard checked before leaving each non-terminal step
STEP_GUARDS: Dict[WizardStep, Callable[[WizardSession], Dict[str, str]]] = {
    WizardStep.CONTACT: validate_contact,
    WizardStep.BIKE_SELECTION: validate_bike_selection,
    WizardStep.VERIFICATION: validate_verification,
    WizardStep.PAYMENT: validate_payment,
}

# Handler that completes the input each step accepts
STEP_HANDLERS: Dict[WizardStep, Callable[..., WizardSession]] = {
    WizardStep.CONTACT: submit_contact,
    WizardStep.BIKE_SELECTION: select_bike,
    WizardStep.VERIFICATION: continue_from_verification,
    WizardStep.PAYMENT: record_payment_success,
    WizardStep.SUCCESS: start_over,
}


def _check_transition_tables():
    missing_guards = [s.name for s in WizardStep if s != WizardStep.SUCCESS and s not in STEP_GUARDS]
    missing_handlers = [s.name for s in WizardStep if s not in STEP_HANDLERS]
    if missing_guards or missing_handlers:
        raise RuntimeError(
            f"Wizard transition tables incomplete: guards missing {missing_guards}, "
            f"handlers missing {missing_handlers}"
        )


_check_transition_tables()


# ============== COMMIT ==============

def format_return_time(end_time: datetime, tz_name: str) -> str:
    """Return time in shop local time, e.g. '2:45 PM'. Naive datetimes are UTC."""
    if end_time.tzinfo is None:
        end_time = end_time.replace(tzinfo=ZoneInfo("UTC"))
    local = end_time.astimezone(ZoneInfo(tz_name))
    return local.strftime("%I:%M %p").lstrip("0")


class IntakeWizard:
    """Commits a paid wizard session and sends the confirmation SMS."""

    def __init__(self, sms_service=None, settings=None):
        self.settings = settings or get_settings()
        self._sms_service = sms_service

    @property
    def sms_service(self):
        if self._sms_service is None:
            self._sms_service = get_sms_service()
        return self._sms_service

    async def commit(
        self,
        db: Session,
        session: WizardSession,
        session_id: str = None,
        request=None,
        latest_waiver_url: Optional[Callable[[], Optional[str]]] = None,
        now: datetime = None,
    ) -> WizardSession:
        """
        Save the booking and move to Success.

        Raises:
            WizardValidationError: payment not completed or session incomplete
            BookingCommitError: the Persistence Gateway failed; the error
                carries the Payment step session to show
        """
        _require_step(session, WizardStep.PAYMENT)
        errors = {**validate_contact(session), **validate_bike_selection(session), **validate_payment(session)}
        if errors:
            raise WizardValidationError(errors)

        settings = self.settings
        duration = session.duration_minutes or settings.test_ride_duration_minutes
        start_time = now or datetime.utcnow()
        end_time = start_time + timedelta(minutes=duration)

        try:
            customer_fields = CustomerFields(
                name=session.name,
                phone=session.phone,
                email=session.email,
                id_photo_url=session.id_photo_url or "",
                signature_data=session.signature_data or "",
                waiver_url=session.waiver_url,
                waiver_signed=session.waiver_signed,
                submission_ip=session.submission_ip,
                submitted_at=session.submitted_at,
            )
            test_drive_fields = TestDriveFields(
                bike_model=session.bike_model,
                start_time=start_time,
                end_time=end_time,
                duration_minutes=duration,
                stripe_payment_intent_id=session.payment_intent_id,
                authorization_amount_cents=settings.hold_amount_cents if session.payment_intent_id else None,
            )
        except ValidationError as e:
            raise WizardValidationError(
                {".".join(str(p) for p in err["loc"]) or "session": err["msg"] for err in e.errors()}
            ) from e

        try:
            result = db_service.create_test_drive(
                db, customer_fields, test_drive_fields, latest_waiver_url=latest_waiver_url
            )
        except db_service.PersistenceError as e:
            message = "We couldn't save your test ride. Please try again."
            logger.error(f"Booking commit failed for session {session_id}: {e}")
            log_error(
                db=db,
                error_type="booking_commit",
                message=str(e),
                request=request,
                severity=ErrorSeverity.CRITICAL if getattr(e, "orphaned_customer_id", None) else ErrorSeverity.ERROR,
                stack_trace=traceback.format_exc(),
                session_id=session_id,
                customer_id=getattr(e, "orphaned_customer_id", None),
                request_data={"bike_model": session.bike_model, "payment_intent_id": session.payment_intent_id},
            )
            raise BookingCommitError(message, record_commit_failure(session, message)) from e

        customer, test_drive = result.customer, result.test_drive
        return_display = format_return_time(test_drive.end_time, settings.shop_timezone)
        confirmation_sent = await self._send_confirmation(db, customer, test_drive, return_display)

        summary = BookingSummary(
            customer_id=customer.id,
            test_drive_id=test_drive.id,
            customer_name=customer.name,
            phone=customer.phone,
            bike_model=test_drive.bike_model,
            bike_name=BIKE_MODELS.get(test_drive.bike_model, test_drive.bike_model),
            start_time=test_drive.start_time,
            return_time=test_drive.end_time,
            return_time_display=return_display,
            location=settings.shop_location,
            confirmation_sent=confirmation_sent,
            confirmation_message=CONFIRMATION_SENT_MESSAGE if confirmation_sent else CONFIRMATION_FAILED_MESSAGE,
        )

        log_audit_event(
            db=db,
            event=AuditLogEvent.BOOKING_CONFIRMED,
            request=request,
            session_id=session_id,
            test_drive_id=test_drive.id,
            event_data={
                "customer_id": customer.id,
                "bike_model": test_drive.bike_model,
                "end_time": test_drive.end_time.isoformat(),
                "payment_intent_id": test_drive.stripe_payment_intent_id,
                "confirmation_sent": confirmation_sent,
            },
        )
        logger.info(f"Test drive {test_drive.id} started for customer {customer.id} ({test_drive.bike_model})")

        return complete_booking(session, summary)

    async def _send_confirmation(self, db: Session, customer, test_drive, return_display: str) -> bool:
        """Send the confirmation SMS. Never fails the booking."""
        sms = self.sms_service
        location = self.settings.shop_location
        try:
            response = await sms.send_test_ride_confirmation(customer.phone, return_display, location)
        except Exception as e:
            logger.error(f"Confirmation SMS to {customer.phone} raised: {e}")
            response = None

        sent = bool(response and response.success)
        db_service.log_notification(
            db,
            customer_phone=customer.phone,
            message_content=sms.confirmation_message(return_display, location),
            message_type=NotificationType.CONFIRMATION,
            delivery_status=DeliveryStatus.SENT if sent else DeliveryStatus.FAILED,
            customer_id=customer.id,
            test_drive_id=test_drive.id,
            provider=response.provider if response else sms.provider_name,
            provider_message_id=response.message_id if response else None,
            error=None if sent else (response.error if response else "SMS dispatch raised"),
        )
        if not sent:
            logger.warning(f"Confirmation SMS for test drive {test_drive.id} not delivered")
        return sent


# ============== SESSION STORE ==============

class SessionNotFoundError(KeyError):
    """No wizard session with this id."""


@dataclass
class WizardRecord:
    """A stored session plus the per-session state that is not part of it."""
    session: WizardSession
    # Confirmation driver for the current Payment step mount
    confirmation: Optional[object] = None
    # Bumped on every signature stroke; only the newest waiver upload is applied
    waiver_seq: int = 0
    # Set while IntakeWizard.commit runs for this session
    committing: bool = False
    # Last time a request touched this session
    last_seen: datetime = field(default_factory=datetime.utcnow)


class WizardSessionStore:
    """
    In-process wizard sessions, one per browser tab.

    Sessions nobody has touched for `idle_minutes` are dropped whenever a
    new one is created. A session that is committing or waiting on a
    payment confirmation is kept regardless of age.
    """

    def __init__(self, idle_minutes: int = None):
        self._records: Dict[str, WizardRecord] = {}
        if idle_minutes is None:
            idle_minutes = get_settings().wizard_session_idle_minutes
        self.idle_timeout = timedelta(minutes=idle_minutes)

    def create(self) -> str:
        self.evict_idle()
        session_id = secrets.token_urlsafe(16)
        self._records[session_id] = WizardRecord(session=WizardSession())
        return session_id

    def get(self, session_id: str) -> WizardRecord:
        try:
            record = self._records[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None
        record.last_seen = datetime.utcnow()
        return record

    def evict_idle(self, now: datetime = None) -> int:
        """Drop idle sessions. Returns how many were dropped."""
        cutoff = (now or datetime.utcnow()) - self.idle_timeout
        stale = [
            session_id for session_id, record in self._records.items()
            if record.last_seen < cutoff
            and not record.committing
            and not (record.confirmation is not None and record.confirmation.in_flight)
        ]
        for session_id in stale:
            del self._records[session_id]
        if stale:
            logger.info(f"Dropped {len(stale)} idle wizard sessions")
        return len(stale)

    def save(self, session_id: str, session: WizardSession) -> WizardSession:
        self.get(session_id).session = session
        return session

    def reset(self, session_id: str) -> WizardSession:
        """Start over: a clean record under the same id."""
        self.get(session_id)
        self._records[session_id] = WizardRecord(session=start_over())
        return self._records[session_id].session

    def discard(self, session_id: str):
        self._records.pop(session_id, None)

    def __len__(self):
        return len(self._records)


@lru_cache()
def get_session_store() -> WizardSessionStore:
    return WizardSessionStore()
