"""
Database-backed audit and error logging.

Every wizard step, payment outcome and admin action is written to
audit_logs; failures that need a human (orphaned customers, failed
compensation, gateway errors) are written to error_logs. Neither helper
ever raises: a logging failure must not break the booking flow.
"""
import json
import logging
from typing import Optional

from fastapi import Request
from sqlalchemy.orm import Session

from db_models import AuditLog, AuditLogEvent, ErrorLog, ErrorSeverity

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ('password', 'card', 'cvv', 'cvc', 'secret', 'token', 'client_secret', 'signature_data')


def client_ip(request: Optional[Request]) -> Optional[str]:
    """Get the client IP, preferring the first X-Forwarded-For hop."""
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def sanitize(data: Optional[dict]) -> Optional[dict]:
    """Drop sensitive fields from request data before it is stored."""
    if not data:
        return None
    return {k: v for k, v in data.items() if k.lower() not in SENSITIVE_KEYS}


def log_audit_event(
    db: Session,
    event: AuditLogEvent,
    request: Request = None,
    session_id: str = None,
    test_drive_id: int = None,
    event_data: dict = None,
):
    """
    Log a test ride audit event to the database.

    Args:
        db: Database session
        event: The type of event (from AuditLogEvent enum)
        request: FastAPI request object (for IP/user agent)
        session_id: Wizard session ID for tracking incomplete bookings
        test_drive_id: Test drive ID once the booking has committed
        event_data: Dictionary of event-specific data (will be JSON serialized)
    """
    try:
        user_agent = request.headers.get("user-agent", "")[:500] if request else None

        audit_log = AuditLog(
            session_id=session_id,
            test_drive_id=test_drive_id,
            event=event,
            event_data=json.dumps(sanitize(event_data), default=str) if event_data else None,
            ip_address=client_ip(request),
            user_agent=user_agent,
        )
        db.add(audit_log)
        db.commit()
    except Exception as e:
        logger.warning(f"Failed to log audit event {event.value}: {e}")
        db.rollback()


def log_error(
    db: Session,
    error_type: str,
    message: str,
    request: Request = None,
    severity: ErrorSeverity = ErrorSeverity.ERROR,
    error_code: str = None,
    stack_trace: str = None,
    request_data: dict = None,
    session_id: str = None,
    test_drive_id: int = None,
    customer_id: int = None,
):
    """
    Log an error to the database.

    Args:
        db: Database session
        error_type: Category of error (e.g., "stripe", "storage", "compensation")
        message: Human-readable error message
        request: FastAPI request object (for endpoint/IP/user agent)
        severity: Error severity level
        error_code: HTTP status or custom error code
        stack_trace: Full stack trace if available
        request_data: Request data (sensitive keys are removed)
        session_id: Wizard session ID if known
        test_drive_id: Associated test drive if known
        customer_id: Associated customer if known
    """
    try:
        user_agent = None
        endpoint = None
        if request:
            user_agent = request.headers.get("user-agent", "")[:500]
            endpoint = f"{request.method} {request.url.path}"

        sanitized = sanitize(request_data)

        error_log = ErrorLog(
            severity=severity,
            error_type=error_type,
            error_code=error_code,
            message=message,
            stack_trace=stack_trace,
            request_data=json.dumps(sanitized, default=str) if sanitized else None,
            endpoint=endpoint,
            session_id=session_id,
            test_drive_id=test_drive_id,
            customer_id=customer_id,
            ip_address=client_ip(request),
            user_agent=user_agent,
        )
        db.add(error_log)
        db.commit()
    except Exception as e:
        logger.warning(f"Failed to log error {error_type}: {e}")
        db.rollback()
