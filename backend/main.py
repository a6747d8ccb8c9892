"""
FastAPI application for the test ride booking system.

Provides REST API endpoints for:
- The intake wizard (contact, bike, verification, payment hold, success)
- Stripe authorization holds and webhooks
- SMS notifications
- The admin view of bikes currently out
"""
import asyncio
import logging
import traceback
import uuid
from datetime import datetime, timedelta
from typing import Optional

import stripe
from fastapi import FastAPI, HTTPException, Query, Request, Header, Depends, File, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from sqlalchemy.orm import Session

from models import (
    ContactRequest,
    BikeSelectionRequest,
    SignatureRequest,
    WaiverAcceptRequest,
    PaymentConfirmRequest,
    CreatePaymentIntentRequest,
    CreatePaymentIntentResponse,
    SendSMSRequest,
)
from config import get_settings, is_stripe_configured
from stripe_service import (
    AuthorizationRequest,
    create_payment_intent,
    cancel_payment_intent,
    verify_webhook_signature,
)

# Database imports
from database import get_db, init_db
from db_models import BIKE_MODELS, AuditLogEvent, ErrorSeverity
from audit_log import log_audit_event, log_error, client_ip
import db_service

# Wizard
import wizard
from wizard import (
    IntakeWizard,
    WizardRecord,
    WizardStep,
    WizardValidationError,
    WizardStepError,
    UploadInProgressError,
    BookingCommitError,
    SessionNotFoundError,
    UploadStatus,
    get_session_store,
)
from payment_confirmation import PaymentConfirmation, ConfirmationResult, ConfirmationState
from verification import upload_id_photo, capture_signature
from admin_service import filter_test_drives, serialize_test_drive, complete_and_release, render_waiver_document
from sms_service import get_sms_service

# Background jobs
from reconciliation_scheduler import start_scheduler, stop_scheduler

logger = logging.getLogger(__name__)


# Initialize FastAPI app
app = FastAPI(
    title="Test Ride Booking API",
    description="Backend API for walk-in electric bike test rides",
    version="1.0.0",
)

# Configure CORS for frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        get_settings().frontend_url,
        "http://localhost:3000",  # Next.js dev server
        "http://localhost:5173",  # Vite dev server
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup_event():
    """Initialize database and start background scheduler on startup."""
    init_db()
    start_scheduler()


@app.on_event("shutdown")
async def shutdown_event():
    """Stop background scheduler on shutdown."""
    stop_scheduler()


# ============================================================================
# ERROR MAPPING
# ============================================================================

@app.exception_handler(WizardValidationError)
async def wizard_validation_handler(request: Request, exc: WizardValidationError):
    return JSONResponse(status_code=400, content={"detail": {"message": exc.message, "errors": exc.errors}})


@app.exception_handler(WizardStepError)
async def wizard_step_handler(request: Request, exc: WizardStepError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(UploadInProgressError)
async def upload_in_progress_handler(request: Request, exc: UploadInProgressError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(SessionNotFoundError)
async def session_not_found_handler(request: Request, exc: SessionNotFoundError):
    return JSONResponse(status_code=404, content={"detail": "Wizard session not found"})


def session_payload(session_id: str, session) -> dict:
    return {"session_id": session_id, "session": session.model_dump(mode="json")}


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "healthy", "service": "Test Ride Booking API"}


@app.get("/api/bikes")
async def get_bikes():
    """Bikes available for test rides."""
    settings = get_settings()
    return {
        "bikes": [{"slug": slug, "name": name} for slug, name in BIKE_MODELS.items()],
        "duration_minutes": settings.test_ride_duration_minutes,
        "location": settings.shop_location,
    }


@app.get("/api/stripe/config")
async def get_stripe_config():
    """
    Get Stripe publishable key for frontend initialization.

    The frontend needs the publishable key to mount the payment element.
    """
    settings = get_settings()

    if not is_stripe_configured():
        raise HTTPException(
            status_code=503,
            detail="Payment system is not configured"
        )

    return {
        "publishable_key": settings.stripe_publishable_key,
        "hold_amount_cents": settings.hold_amount_cents,
        "currency": settings.currency,
        "is_configured": True,
    }


# ============================================================================
# INTAKE WIZARD
# ============================================================================

@app.post("/api/wizard/sessions")
async def create_wizard_session(http_request: Request, db: Session = Depends(get_db)):
    """Start a new wizard session (one per browser tab)."""
    store = get_session_store()
    session_id = store.create()
    log_audit_event(db=db, event=AuditLogEvent.SESSION_STARTED, request=http_request, session_id=session_id)
    return session_payload(session_id, store.get(session_id).session)


@app.get("/api/wizard/sessions/{session_id}")
async def get_wizard_session(session_id: str):
    return session_payload(session_id, get_session_store().get(session_id).session)


@app.post("/api/wizard/sessions/{session_id}/contact")
async def submit_contact(
    session_id: str,
    request: ContactRequest,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """Contact step: name and phone required, email optional."""
    store = get_session_store()
    record = store.get(session_id)
    session = store.save(session_id, wizard.submit_contact(record.session, request.name, request.phone, request.email))

    log_audit_event(
        db=db,
        event=AuditLogEvent.CONTACT_ENTERED,
        request=http_request,
        session_id=session_id,
        event_data={"name": session.name, "phone": session.phone, "email": session.email},
    )
    return session_payload(session_id, session)


@app.post("/api/wizard/sessions/{session_id}/bike")
async def select_bike(
    session_id: str,
    request: BikeSelectionRequest,
    http_request: Request,
    db: Session = Depends(get_db),
):
    settings = get_settings()
    store = get_session_store()
    record = store.get(session_id)
    session = store.save(
        session_id,
        wizard.select_bike(record.session, request.bike_model, settings.test_ride_duration_minutes),
    )

    log_audit_event(
        db=db,
        event=AuditLogEvent.BIKE_SELECTED,
        request=http_request,
        session_id=session_id,
        event_data={"bike_model": session.bike_model},
    )
    return session_payload(session_id, session)


@app.post("/api/wizard/sessions/{session_id}/back")
async def go_back(session_id: str):
    store = get_session_store()
    record = store.get(session_id)
    if record.committing:
        raise WizardStepError("Your booking is being saved")
    if record.session.step == WizardStep.PAYMENT:
        # Returning to Payment later places a new hold
        record.confirmation = None
    return session_payload(session_id, store.save(session_id, wizard.go_back(record.session)))


@app.post("/api/wizard/sessions/{session_id}/start-over")
async def start_over(session_id: str, http_request: Request, db: Session = Depends(get_db)):
    """
    Reset to an empty Contact step.

    Anything already committed (customer, test drive, authorization hold)
    stays as it is.
    """
    store = get_session_store()
    previous_step = store.get(session_id).session.step
    session = store.reset(session_id)

    log_audit_event(
        db=db,
        event=AuditLogEvent.SESSION_RESET,
        request=http_request,
        session_id=session_id,
        event_data={"from_step": previous_step.name.lower()},
    )
    return session_payload(session_id, session)


# ============== VERIFICATION ==============

@app.post("/api/wizard/sessions/{session_id}/id-photo")
async def upload_id_photo_endpoint(
    session_id: str,
    http_request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
):
    """
    Upload a photo of the customer's ID.

    A failed upload is reported in the session (id_photo_status=failed)
    and can be retried. A second upload while one is running is rejected.
    """
    record = get_session_store().get(session_id)
    data = await file.read()
    session = await upload_id_photo(record, file.filename, data)

    if session.id_photo_status == UploadStatus.SUCCESS:
        log_audit_event(
            db=db,
            event=AuditLogEvent.ID_PHOTO_UPLOADED,
            request=http_request,
            session_id=session_id,
            event_data={"id_photo_url": session.id_photo_url, "size": len(data)},
        )
    else:
        log_error(
            db=db,
            error_type="id_photo_upload",
            message=session.error or "ID photo upload failed",
            request=http_request,
            severity=ErrorSeverity.WARNING,
            session_id=session_id,
            request_data={"filename": file.filename, "content_type": file.content_type, "size": len(data)},
        )
    return session_payload(session_id, session)


@app.post("/api/wizard/sessions/{session_id}/signature")
async def capture_signature_endpoint(
    session_id: str,
    request: SignatureRequest,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """A signature stroke ended: store it and re-render the waiver."""
    record = get_session_store().get(session_id)
    session = await capture_signature(record, request.signature_data)

    if session.waiver_status == UploadStatus.SUCCESS:
        log_audit_event(
            db=db,
            event=AuditLogEvent.SIGNATURE_CAPTURED,
            request=http_request,
            session_id=session_id,
            event_data={"waiver_url": session.waiver_url},
        )
    elif session.waiver_status == UploadStatus.FAILED:
        log_error(
            db=db,
            error_type="waiver_upload",
            message=session.error or "Waiver upload failed",
            request=http_request,
            severity=ErrorSeverity.WARNING,
            session_id=session_id,
        )
    return session_payload(session_id, session)


@app.delete("/api/wizard/sessions/{session_id}/signature")
async def clear_signature(session_id: str):
    store = get_session_store()
    record = store.get(session_id)
    # Any waiver upload still running belongs to the cleared drawing
    record.waiver_seq += 1
    return session_payload(session_id, store.save(session_id, wizard.clear_signature(record.session)))


@app.post("/api/wizard/sessions/{session_id}/waiver")
async def accept_waiver(
    session_id: str,
    request: WaiverAcceptRequest,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """Waiver modal checkbox. Records when and from where it was accepted."""
    store = get_session_store()
    record = store.get(session_id)
    ip_address = client_ip(http_request)
    session = store.save(
        session_id,
        wizard.accept_waiver(record.session, request.agreed, datetime.utcnow(), ip_address),
    )

    log_audit_event(
        db=db,
        event=AuditLogEvent.WAIVER_ACCEPTED,
        request=http_request,
        session_id=session_id,
        event_data={"submitted_at": session.submitted_at.isoformat()},
    )
    return session_payload(session_id, session)


@app.post("/api/wizard/sessions/{session_id}/verification")
async def continue_from_verification(session_id: str):
    """Continue to Payment once the ID photo, signature and waiver are all in place."""
    store = get_session_store()
    record = store.get(session_id)
    session = store.save(session_id, wizard.continue_from_verification(record.session))
    record.confirmation = None
    return session_payload(session_id, session)


# ============== PAYMENT ==============

@app.post("/api/wizard/sessions/{session_id}/payment/intent")
async def create_wizard_payment_intent(
    session_id: str,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """
    Place a new authorization hold for this Payment step.

    Called every time the Payment step mounts (including "Try Again"); a
    previous hold is never reused.
    """
    settings = get_settings()
    store = get_session_store()
    record = store.get(session_id)

    if record.session.step != WizardStep.PAYMENT:
        raise WizardStepError("Payment is not the current step")
    if record.committing or record.session.payment_status == wizard.PaymentOutcome.COMPLETED:
        raise WizardStepError("Payment is already authorized")
    if record.confirmation is not None and record.confirmation.in_flight:
        raise WizardStepError("Your payment is still being confirmed")
    if not is_stripe_configured():
        raise HTTPException(
            status_code=503,
            detail="Payment system is not configured"
        )

    idempotency_key = f"{session_id}-{uuid.uuid4().hex}"
    try:
        intent = await asyncio.to_thread(
            create_payment_intent,
            AuthorizationRequest(
                amount=settings.hold_amount_cents,
                customer_email=record.session.email or "",
                idempotency_key=idempotency_key,
            ),
        )
    except stripe.StripeError as e:
        log_error(
            db=db,
            error_type="stripe",
            message=f"Failed to create authorization hold: {str(e)}",
            request=http_request,
            session_id=session_id,
            stack_trace=traceback.format_exc(),
        )
        raise HTTPException(status_code=502, detail="Could not start payment. Please try again.")

    record.confirmation = PaymentConfirmation(
        intent.payment_intent_id,
        client_secret=intent.client_secret,
        return_url=f"{settings.frontend_url}/?session={session_id}",
    )
    session = store.save(session_id, wizard.attach_payment_intent(record.session, intent.payment_intent_id))

    log_audit_event(
        db=db,
        event=AuditLogEvent.PAYMENT_INITIATED,
        request=http_request,
        session_id=session_id,
        event_data={"payment_intent_id": intent.payment_intent_id, "amount_cents": intent.amount},
    )

    return {
        **session_payload(session_id, session),
        "client_secret": intent.client_secret,
        "payment_intent_id": intent.payment_intent_id,
        "amount": intent.amount,
        "currency": intent.currency,
        "publishable_key": settings.stripe_publishable_key,
    }


async def _commit(db: Session, record: WizardRecord, session_id: str, http_request: Request):
    """Run the booking commit for a session whose payment is completed."""
    store = get_session_store()
    if record.committing:
        raise WizardStepError("Your booking is already being saved")

    record.committing = True
    try:
        session = await IntakeWizard().commit(
            db,
            record.session,
            session_id=session_id,
            request=http_request,
            latest_waiver_url=lambda: record.session.waiver_url,
        )
    except BookingCommitError as e:
        record.session = e.session
        raise HTTPException(
            status_code=500,
            detail={"message": e.message, **session_payload(session_id, e.session)},
        )
    finally:
        record.committing = False

    record.confirmation = None
    return store.save(session_id, session)


async def _apply_confirmation(
    db: Session,
    record: WizardRecord,
    session_id: str,
    result: ConfirmationResult,
    http_request: Request,
) -> dict:
    session = record.session
    if result.payment_intent_id != session.payment_intent_id:
        # The session moved on to another hold while this one was confirming
        logger.warning(
            f"Ignoring {result.state.value} result for superseded intent {result.payment_intent_id} "
            f"(session {session_id} holds {session.payment_intent_id})"
        )
        if result.state == ConfirmationState.COMPLETED:
            await asyncio.to_thread(cancel_payment_intent, result.payment_intent_id)
        raise WizardStepError("This payment attempt was replaced by a newer one")

    if result.state == ConfirmationState.COMPLETED and session.payment_status != wizard.PaymentOutcome.COMPLETED:
        record.session = wizard.record_payment_success(session)
        log_audit_event(
            db=db,
            event=AuditLogEvent.PAYMENT_SUCCEEDED,
            request=http_request,
            session_id=session_id,
            event_data={"payment_intent_id": result.payment_intent_id, "status": result.gateway_status},
        )
        session = await _commit(db, record, session_id, http_request)
    elif result.state == ConfirmationState.FAILED:
        session = record.session = wizard.record_payment_failure(session, result.message)
        log_audit_event(
            db=db,
            event=AuditLogEvent.PAYMENT_FAILED,
            request=http_request,
            session_id=session_id,
            event_data={
                "payment_intent_id": result.payment_intent_id,
                "status": result.gateway_status,
                "message": result.message,
            },
        )

    return {**session_payload(session_id, session), "payment": result.model_dump(mode="json")}


@app.post("/api/wizard/sessions/{session_id}/payment/confirm")
async def confirm_wizard_payment(
    session_id: str,
    request: PaymentConfirmRequest,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """
    Confirm the hold with the payment method from the payment element.

    A repeat submit while the confirmation is processing or completed does
    not reach Stripe. On authorization the booking is committed and the
    session moves to Success.
    """
    record = get_session_store().get(session_id)
    if record.session.step != WizardStep.PAYMENT or record.confirmation is None:
        raise WizardStepError("Payment has not been started")

    result = await record.confirmation.submit(request.payment_method)
    return await _apply_confirmation(db, record, session_id, result, http_request)


@app.post("/api/wizard/sessions/{session_id}/payment/refresh")
async def refresh_wizard_payment(
    session_id: str,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """Re-check a hold that is still processing (e.g. after 3-D Secure)."""
    record = get_session_store().get(session_id)
    if record.session.step != WizardStep.PAYMENT or record.confirmation is None:
        raise WizardStepError("Payment has not been started")

    result = await record.confirmation.refresh()
    return await _apply_confirmation(db, record, session_id, result, http_request)


@app.post("/api/wizard/sessions/{session_id}/commit")
async def retry_commit(
    session_id: str,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """Retry saving a booking whose hold was authorized but whose save failed."""
    record = get_session_store().get(session_id)
    session = await _commit(db, record, session_id, http_request)
    return session_payload(session_id, session)


# ============================================================================
# STRIPE
# ============================================================================

@app.post("/api/create-payment-intent", response_model=CreatePaymentIntentResponse)
async def create_payment_intent_endpoint(
    request: CreatePaymentIntentRequest,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """
    Create an authorization hold (manual capture PaymentIntent).

    Body: {amount, customerEmail, idempotencyKey}. Returns the client secret
    for the payment element.
    """
    if request.amount <= 0:
        raise HTTPException(status_code=400, detail="Amount must be a positive number of cents")

    if not is_stripe_configured():
        raise HTTPException(
            status_code=503,
            detail="Payment system is not configured"
        )

    try:
        intent = await asyncio.to_thread(
            create_payment_intent,
            AuthorizationRequest(
                amount=request.amount,
                customer_email=request.customer_email,
                idempotency_key=request.idempotency_key,
            ),
        )
    except stripe.StripeError as e:
        log_error(
            db=db,
            error_type="stripe",
            message=f"Failed to create payment intent: {str(e)}",
            request=http_request,
            stack_trace=traceback.format_exc(),
            request_data={"amount": request.amount, "customer_email": request.customer_email},
        )
        raise HTTPException(status_code=502, detail="Failed to create payment intent")

    log_audit_event(
        db=db,
        event=AuditLogEvent.PAYMENT_INITIATED,
        request=http_request,
        event_data={"payment_intent_id": intent.payment_intent_id, "amount_cents": intent.amount},
    )

    return CreatePaymentIntentResponse(
        client_secret=intent.client_secret,
        payment_intent_id=intent.payment_intent_id,
    )


# PaymentIntent events recorded in the audit log
WEBHOOK_AUDIT_EVENTS = {
    "payment_intent.amount_capturable_updated": AuditLogEvent.HOLD_PLACED,
    "payment_intent.succeeded": AuditLogEvent.PAYMENT_SUCCEEDED,
    "payment_intent.payment_failed": AuditLogEvent.PAYMENT_FAILED,
    "payment_intent.canceled": AuditLogEvent.HOLD_CANCELED,
}


@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    """
    Handle Stripe webhook events.

    Hold lifecycle events (authorized, captured, failed, canceled) are
    written to the audit log. Holds are never captured automatically.
    """
    if not is_stripe_configured():
        raise HTTPException(
            status_code=503,
            detail="Payment system is not configured"
        )

    if not stripe_signature:
        raise HTTPException(status_code=400, detail="Missing Stripe signature")

    # Get the raw body
    payload = await request.body()

    try:
        event = verify_webhook_signature(payload, stripe_signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid signature: {str(e)}")

    event_type = event["type"]
    audit_event = WEBHOOK_AUDIT_EVENTS.get(event_type)
    if audit_event is None:
        # Return success for other event types (we don't need to handle them)
        return {"status": "received", "type": event_type}

    data = event["data"]["object"]
    metadata = data.get("metadata") or {}
    event_data = {
        "payment_intent_id": data.get("id"),
        "status": data.get("status"),
        "amount_cents": data.get("amount"),
        "amount_capturable": data.get("amount_capturable"),
        "hold_type": metadata.get("type"),
    }
    if event_type == "payment_intent.payment_failed":
        event_data["error_message"] = (data.get("last_payment_error") or {}).get("message", "Unknown error")

    log_audit_event(db=db, event=audit_event, request=request, event_data=event_data)
    logger.info(f"Stripe webhook {event_type} for {data.get('id')}")

    return {"status": "recorded", "type": event_type}


# ============================================================================
# SMS
# ============================================================================

@app.post("/api/send-sms")
async def send_sms(request: SendSMSRequest, http_request: Request, db: Session = Depends(get_db)):
    """Send an SMS through the configured provider. The number is normalized to E.164."""
    if not request.phone or not request.message:
        raise HTTPException(status_code=400, detail="Phone and message are required")

    sms = get_sms_service()
    if not sms.is_configured():
        raise HTTPException(status_code=503, detail="SMS service not configured")

    response = await sms.send_sms(request.phone, request.message)
    if not response.success:
        log_error(
            db=db,
            error_type="sms",
            message=f"SMS delivery failed: {response.error}",
            request=http_request,
            severity=ErrorSeverity.WARNING,
            request_data={"phone": request.phone, "provider": response.provider},
        )
        raise HTTPException(status_code=502, detail=response.error or "SMS delivery failed")

    return {"success": True, "message_id": response.message_id, "provider": response.provider}


# ============================================================================
# ADMIN
# ============================================================================

@app.get("/api/admin/test-drives")
async def list_active_test_drives(
    q: Optional[str] = Query(None, description="Search by customer name, phone or bike"),
    db: Session = Depends(get_db),
):
    """Bikes currently out, newest first. Loaded fresh on every request."""
    drives = filter_test_drives(db_service.get_active_test_drives(db), q)
    return {
        "count": len(drives),
        "query": (q or "").strip(),
        "test_drives": [serialize_test_drive(d) for d in drives],
    }


@app.post("/api/admin/test-drives/{test_drive_id}/complete")
async def complete_test_drive(
    test_drive_id: int,
    http_request: Request,
    db: Session = Depends(get_db),
):
    """
    Mark a bike returned.

    Succeeds for unknown or already completed IDs. Releasing the hold and
    the thank-you SMS are best-effort.
    """
    try:
        result = await complete_and_release(db, test_drive_id)
    except db_service.PersistenceError as e:
        log_error(
            db=db,
            error_type="complete_test_drive",
            message=str(e),
            request=http_request,
            stack_trace=traceback.format_exc(),
            test_drive_id=test_drive_id,
        )
        raise HTTPException(status_code=500, detail="Failed to complete test drive")

    if result["status"] is not None:
        log_audit_event(
            db=db,
            event=AuditLogEvent.TEST_DRIVE_COMPLETED,
            request=http_request,
            test_drive_id=test_drive_id,
            event_data=result,
        )
    if result["hold_released"]:
        log_audit_event(
            db=db,
            event=AuditLogEvent.HOLD_CANCELED,
            request=http_request,
            test_drive_id=test_drive_id,
        )
    return result


@app.get("/api/admin/test-drives/{test_drive_id}/waiver", response_class=HTMLResponse)
async def get_test_drive_waiver(test_drive_id: int, db: Session = Depends(get_db)):
    """Printable signed waiver for the customer on this test drive."""
    test_drive = db_service.get_test_drive(db, test_drive_id)
    if test_drive is None or test_drive.customer is None:
        raise HTTPException(status_code=404, detail="Test drive not found")
    return HTMLResponse(render_waiver_document(test_drive))


@app.get("/api/admin/orphaned-customers")
async def list_orphaned_customers(
    older_than_minutes: int = Query(None, ge=0),
    db: Session = Depends(get_db),
):
    """Customers without a test drive (a compensating delete failed)."""
    minutes = older_than_minutes if older_than_minutes is not None else get_settings().orphan_grace_minutes
    orphans = db_service.find_orphaned_customers(db, older_than=timedelta(minutes=minutes))
    return {
        "count": len(orphans),
        "customers": [
            {
                "id": c.id,
                "name": c.name,
                "phone": c.phone,
                "created_at": c.created_at.isoformat() if c.created_at else None,
            }
            for c in orphans
        ],
    }


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
