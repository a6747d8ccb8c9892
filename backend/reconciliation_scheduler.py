"""
Background jobs using APScheduler.

Reconciliation sweep: looks for customers left without a test drive. They
only exist when the compensating delete after a failed test drive insert
also failed. The sweep reports them (application log plus an error_logs
row) for manual cleanup; it never deletes anything itself.

Return reminders: texts each customer once, shortly before their bike is
due back.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Set

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from audit_log import log_error
from config import get_settings
from database import SessionLocal
from db_models import ErrorSeverity, NotificationType, DeliveryStatus
from db_service import find_orphaned_customers, get_test_drives_due_for_reminder, log_notification
from sms_service import get_sms_service
from wizard import format_return_time

logger = logging.getLogger(__name__)

# Scheduler instance
scheduler = BackgroundScheduler()

# Orphans already reported by this process
_reported: Set[int] = set()


def get_db() -> Session:
    """Get a database session."""
    return SessionLocal()


def sweep_orphaned_customers(db: Session = None) -> List[int]:
    """
    Report customers that have no test drive and are older than the grace
    period. Each orphan is reported once per process.

    Returns:
        IDs newly reported by this run
    """
    settings = get_settings()
    owns_session = db is None
    db = db or get_db()
    newly_reported = []
    try:
        orphans = find_orphaned_customers(db, older_than=timedelta(minutes=settings.orphan_grace_minutes))
        for customer in orphans:
            if customer.id in _reported:
                continue
            logger.warning(f"Orphaned customer {customer.id} ({customer.phone}) has no test drive")
            log_error(
                db=db,
                error_type="orphaned_customer",
                message=f"Customer {customer.id} has no test drive; compensating delete did not complete",
                severity=ErrorSeverity.WARNING,
                customer_id=customer.id,
            )
            _reported.add(customer.id)
            newly_reported.append(customer.id)
    except SQLAlchemyError as e:
        logger.error(f"Error sweeping orphaned customers: {str(e)}")
        db.rollback()
    finally:
        if owns_session:
            db.close()
    return newly_reported


def send_return_reminders(db: Session = None, sms_service=None, now: datetime = None) -> List[int]:
    """
    Text customers whose ride ends within the reminder window.

    Every attempt is logged as a reminder notification, so a drive is never
    reminded twice even when the send failed.

    Returns:
        IDs of the test drives a reminder was attempted for
    """
    settings = get_settings()
    owns_session = db is None
    db = db or get_db()
    sms_service = sms_service or get_sms_service()
    now = now or datetime.utcnow()
    attempted = []
    try:
        due = get_test_drives_due_for_reminder(
            db, now, timedelta(minutes=settings.reminder_minutes_before_end)
        )
        for test_drive in due:
            customer = test_drive.customer
            return_time = format_return_time(test_drive.end_time, settings.shop_timezone)
            try:
                response = asyncio.run(sms_service.send_test_ride_reminder(customer.phone, return_time))
            except Exception as e:
                logger.error(f"Reminder SMS to {customer.phone} raised: {e}")
                response = None

            sent = bool(response and response.success)
            log_notification(
                db,
                customer_phone=customer.phone,
                message_content=sms_service.reminder_message(return_time),
                message_type=NotificationType.REMINDER,
                delivery_status=DeliveryStatus.SENT if sent else DeliveryStatus.FAILED,
                customer_id=customer.id,
                test_drive_id=test_drive.id,
                provider=response.provider if response else sms_service.provider_name,
                provider_message_id=response.message_id if response else None,
                error=None if sent else (response.error if response else "SMS dispatch raised"),
            )
            logger.info(f"Return reminder for test drive {test_drive.id} {'sent' if sent else 'failed'}")
            attempted.append(test_drive.id)
    except SQLAlchemyError as e:
        logger.error(f"Error sending return reminders: {str(e)}")
        db.rollback()
    finally:
        if owns_session:
            db.close()
    return attempted


def start_scheduler():
    """Start the background jobs that have an interval configured."""
    settings = get_settings()
    if scheduler.running:
        logger.info("Scheduler already running")
        return

    jobs = 0
    if settings.orphan_sweep_interval_minutes > 0:
        scheduler.add_job(
            sweep_orphaned_customers,
            trigger=IntervalTrigger(minutes=settings.orphan_sweep_interval_minutes),
            id="sweep_orphans",
            name="Report customers without a test drive",
            replace_existing=True,
        )
        jobs += 1
    else:
        logger.info("Orphan sweep disabled")

    if settings.reminder_minutes_before_end > 0:
        scheduler.add_job(
            send_return_reminders,
            trigger=IntervalTrigger(minutes=settings.reminder_check_interval_minutes),
            id="return_reminders",
            name="Text customers before their bike is due back",
            replace_existing=True,
        )
        jobs += 1
    else:
        logger.info("Return reminders disabled")

    if not jobs:
        return
    scheduler.start()
    logger.info(f"Background scheduler started with {jobs} job(s)")


def stop_scheduler():
    """Stop the background scheduler."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Background scheduler stopped")


def reset_reported():
    """Forget which orphans were reported."""
    _reported.clear()
