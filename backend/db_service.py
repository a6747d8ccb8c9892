"""
Database service layer for test ride bookings.

The customer and test drive rows are written as two separate commits.
There is no distributed transaction across the datastore, the payment
gateway and the SMS provider; a failed test drive insert is undone by
deleting the customer that was just created.
"""
import logging
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import and_, exists
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from audit_log import log_error
from db_models import (
    Customer, TestDrive, Notification,
    TestDriveStatus, NotificationType, DeliveryStatus, ErrorSeverity
)
from models import CustomerFields, TestDriveFields

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """A datastore write for a booking failed."""


class CustomerCreationError(PersistenceError):
    """The customer insert failed. Nothing was written."""


class TestDriveCreationError(PersistenceError):
    """
    The test drive insert failed after the customer was written.

    orphaned_customer_id is set only when the compensating delete also
    failed and the customer row is still in the database.
    """
    __test__ = False

    def __init__(self, message: str, orphaned_customer_id: Optional[int] = None):
        super().__init__(message)
        self.orphaned_customer_id = orphaned_customer_id


@dataclass
class TestDriveResult:
    """The committed customer / test drive pair."""
    __test__ = False

    customer: Customer
    test_drive: TestDrive


# ============== BOOKING OPERATIONS ==============

def create_test_drive(
    db: Session,
    customer: CustomerFields,
    test_drive: TestDriveFields,
    latest_waiver_url: Optional[Callable[[], Optional[str]]] = None,
) -> TestDriveResult:
    """
    Create the customer and test drive rows for one booking.

    Args:
        db: Database session
        customer: Customer fields (validated)
        test_drive: Test drive fields (validated)
        latest_waiver_url: Optional callable returning the newest waiver
            reference; if it differs from the inserted one the customer row
            is backfilled (best-effort)

    Returns:
        TestDriveResult with both persisted rows

    Raises:
        CustomerCreationError: customer insert failed, nothing was written
        TestDriveCreationError: test drive insert failed, customer removed
    """
    # 1. Customer
    db_customer = Customer(
        name=customer.name.strip(),
        phone=customer.phone.strip(),
        email=customer.email,
        id_photo_url=customer.id_photo_url,
        signature_data=customer.signature_data,
        waiver_url=customer.waiver_url,
        waiver_signed=customer.waiver_signed,
        submission_ip=customer.submission_ip,
        submitted_at=customer.submitted_at or datetime.utcnow(),
    )
    try:
        db.add(db_customer)
        db.commit()
        db.refresh(db_customer)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Customer creation error for {customer.phone}: {e}")
        raise CustomerCreationError(f"Failed to create customer record: {e}") from e

    customer_id = db_customer.id

    # 2. Test drive, with the customer removed again if it fails
    db_test_drive = TestDrive(
        customer_id=customer_id,
        bike_model=test_drive.bike_model,
        start_time=test_drive.start_time,
        end_time=test_drive.end_time,
        duration_minutes=test_drive.duration_minutes,
        status=TestDriveStatus.ACTIVE,
        stripe_payment_intent_id=test_drive.stripe_payment_intent_id,
        authorization_amount_cents=test_drive.authorization_amount_cents,
    )
    try:
        db.add(db_test_drive)
        db.commit()
        db.refresh(db_test_drive)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Test drive creation error for customer {customer_id}: {e}")
        orphaned = None if delete_customer(db, customer_id) else customer_id
        raise TestDriveCreationError(
            f"Failed to create test drive record: {e}",
            orphaned_customer_id=orphaned,
        ) from e

    # 3. Waiver reference that arrived after the customer insert
    if latest_waiver_url is not None:
        newest = latest_waiver_url()
        if newest and newest != db_customer.waiver_url:
            backfill_waiver_url(db, customer_id, newest)
            db.refresh(db_customer)

    return TestDriveResult(customer=db_customer, test_drive=db_test_drive)


def delete_customer(db: Session, customer_id: int) -> bool:
    """
    Compensating delete for a customer whose test drive insert failed.

    Returns True if the row is gone. A failure is logged (application log
    and error_logs) and left for manual reconciliation.
    """
    try:
        db.query(Customer).filter(Customer.id == customer_id).delete()
        db.commit()
        logger.info(f"Compensating delete removed customer {customer_id}")
        return True
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Compensating delete failed, customer {customer_id} is orphaned: {e}")
        log_error(
            db=db,
            error_type="compensation",
            message=f"Compensating delete failed; customer {customer_id} left without a test drive: {e}",
            severity=ErrorSeverity.CRITICAL,
            stack_trace=traceback.format_exc(),
            customer_id=customer_id,
        )
        return False


def backfill_waiver_url(db: Session, customer_id: int, waiver_url: str) -> bool:
    """
    Best-effort update of a customer's waiver_url.

    The waiver document is already in object storage; only the
    back-reference is missing, so a failure here is logged and ignored.
    """
    try:
        updated = db.query(Customer).filter(Customer.id == customer_id).update(
            {Customer.waiver_url: waiver_url, Customer.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
        db.commit()
        if updated:
            logger.info(f"Backfilled waiver_url for customer {customer_id}")
        return bool(updated)
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"waiver_url backfill skipped for customer {customer_id}: {e}")
        return False


def get_test_drive(db: Session, test_drive_id: int) -> Optional[TestDrive]:
    """Get test drive by ID with its customer."""
    return db.query(TestDrive).options(joinedload(TestDrive.customer)).filter(
        TestDrive.id == test_drive_id
    ).first()


def get_active_test_drives(db: Session) -> List[TestDrive]:
    """Get all bikes currently out, newest first, with customers loaded."""
    return db.query(TestDrive).options(
        joinedload(TestDrive.customer)
    ).filter(
        TestDrive.status == TestDriveStatus.ACTIVE
    ).order_by(
        TestDrive.created_at.desc(),
        TestDrive.id.desc(),
    ).all()


def complete_test_drive(db: Session, test_drive_id: int) -> Optional[TestDrive]:
    """
    Mark a test drive completed.

    No guard on the current status: completing twice just rewrites the
    terminal state and bumps updated_at. An unknown ID is not an error.

    Raises:
        PersistenceError: the update failed
    """
    try:
        db.query(TestDrive).filter(TestDrive.id == test_drive_id).update(
            {TestDrive.status: TestDriveStatus.COMPLETED, TestDrive.updated_at: datetime.utcnow()},
            synchronize_session=False,
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error completing test drive {test_drive_id}: {e}")
        raise PersistenceError(f"Failed to complete test drive: {e}") from e

    test_drive = get_test_drive(db, test_drive_id)
    if test_drive is not None:
        db.refresh(test_drive)
    return test_drive


def get_test_drives_due_for_reminder(db: Session, now: datetime, within: timedelta) -> List[TestDrive]:
    """Active drives ending in (now, now + within] with no reminder logged yet."""
    reminded = exists().where(and_(
        Notification.test_drive_id == TestDrive.id,
        Notification.message_type == NotificationType.REMINDER,
    ))
    return db.query(TestDrive).options(
        joinedload(TestDrive.customer)
    ).filter(
        TestDrive.status == TestDriveStatus.ACTIVE,
        TestDrive.end_time > now,
        TestDrive.end_time <= now + within,
        ~reminded,
    ).order_by(TestDrive.end_time.asc()).all()


# ============== RECONCILIATION ==============

def find_orphaned_customers(db: Session, older_than: timedelta = timedelta(minutes=15)) -> List[Customer]:
    """
    Customers with no test drive, created more than `older_than` ago.

    These are left behind only when a compensating delete failed. The
    grace period skips bookings that are between their two inserts.
    """
    cutoff = datetime.utcnow() - older_than
    return db.query(Customer).outerjoin(
        TestDrive, TestDrive.customer_id == Customer.id
    ).filter(
        TestDrive.id.is_(None),
        Customer.created_at <= cutoff,
    ).order_by(Customer.created_at.asc()).all()


# ============== NOTIFICATIONS ==============

def log_notification(
    db: Session,
    customer_phone: str,
    message_content: str,
    message_type: NotificationType,
    delivery_status: DeliveryStatus,
    customer_id: int = None,
    test_drive_id: int = None,
    provider: str = None,
    provider_message_id: str = None,
    error: str = None,
) -> Optional[Notification]:
    """Record an SMS dispatch attempt. Best-effort: returns None on failure."""
    try:
        notification = Notification(
            customer_id=customer_id,
            test_drive_id=test_drive_id,
            customer_phone=customer_phone,
            message_content=message_content,
            message_type=message_type,
            delivery_status=delivery_status,
            provider=provider,
            provider_message_id=provider_message_id,
            error=error,
        )
        db.add(notification)
        db.commit()
        db.refresh(notification)
        return notification
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(f"Failed to log notification to {customer_phone}: {e}")
        return None
