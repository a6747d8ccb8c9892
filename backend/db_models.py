"""
SQLAlchemy database models for the test ride booking system.
"""
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Enum, Boolean, Text,
    CheckConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


# Bikes offered for test rides: slug -> display name
BIKE_MODELS = {
    "rad-power-bikes": "Rad Power Bikes",
    "aventon": "Aventon",
    "other": "Other",
}


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class TestDriveStatus(enum.Enum):
    """Status of a test drive. Only ever moves ACTIVE -> COMPLETED."""
    __test__ = False

    ACTIVE = "active"             # Bike is out with the customer
    COMPLETED = "completed"       # Bike returned to the shop


class NotificationType(enum.Enum):
    """Kind of SMS sent to a customer."""
    CONFIRMATION = "confirmation"
    COMPLETION = "completion"
    REMINDER = "reminder"


class DeliveryStatus(enum.Enum):
    """Outcome of an SMS dispatch attempt."""
    SENT = "sent"
    FAILED = "failed"


class Customer(Base):
    """Walk-in customer identity and verification artifacts."""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(200), nullable=False)
    phone = Column(String(30), nullable=False, index=True)
    email = Column(String(255))

    # Verification artifacts (object storage references)
    id_photo_url = Column(Text, nullable=False)
    signature_data = Column(Text, nullable=False)
    waiver_url = Column(Text)
    waiver_signed = Column(Boolean, default=False, nullable=False)

    # Waiver audit
    submission_ip = Column(String(45))  # IPv6 compatible
    submitted_at = Column(DateTime(timezone=True))

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    test_drives = relationship("TestDrive", back_populates="customer")

    def __repr__(self):
        return f"<Customer {self.name} ({self.phone})>"


class TestDrive(Base):
    """One test ride session."""
    __test__ = False
    __tablename__ = "test_drives"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_test_drives_end_after_start"),
        CheckConstraint(
            "bike_model IN ({})".format(", ".join(f"'{slug}'" for slug in BIKE_MODELS)),
            name="ck_test_drives_bike_model",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)

    bike_model = Column(String(100), nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    duration_minutes = Column(Integer)

    status = Column(
        Enum(TestDriveStatus, values_callable=_enum_values, name="testdrivestatus"),
        default=TestDriveStatus.ACTIVE,
        nullable=False,
        index=True,
    )

    # Authorization hold
    stripe_payment_intent_id = Column(String(255), index=True)
    authorization_amount_cents = Column(Integer)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    customer = relationship("Customer", back_populates="test_drives")

    def __repr__(self):
        return f"<TestDrive {self.id} {self.bike_model} - {self.status.value}>"


class Notification(Base):
    """Log of SMS messages sent to customers."""
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="SET NULL"), index=True)
    test_drive_id = Column(Integer, ForeignKey("test_drives.id", ondelete="SET NULL"), index=True)

    customer_phone = Column(String(30), nullable=False)
    message_content = Column(Text, nullable=False)
    message_type = Column(
        Enum(NotificationType, values_callable=_enum_values, name="notificationtype"),
        nullable=False,
    )

    # Delivery
    delivery_status = Column(
        Enum(DeliveryStatus, values_callable=_enum_values, name="deliverystatus"),
        nullable=False,
    )
    provider = Column(String(20))
    provider_message_id = Column(String(100))
    error = Column(Text)

    sent_at = Column(DateTime(timezone=True), server_default=func.now())

    def __repr__(self):
        return f"<Notification {self.message_type.value} to {self.customer_phone} - {self.delivery_status.value}>"


class AuditLogEvent(enum.Enum):
    """Types of test ride audit events."""
    # Wizard flow events
    SESSION_STARTED = "session_started"
    CONTACT_ENTERED = "contact_entered"
    BIKE_SELECTED = "bike_selected"
    ID_PHOTO_UPLOADED = "id_photo_uploaded"
    SIGNATURE_CAPTURED = "signature_captured"
    WAIVER_ACCEPTED = "waiver_accepted"
    PAYMENT_INITIATED = "payment_initiated"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    BOOKING_CONFIRMED = "booking_confirmed"
    SESSION_RESET = "session_reset"
    # Gateway events
    HOLD_PLACED = "hold_placed"
    HOLD_CANCELED = "hold_canceled"
    # Admin events
    TEST_DRIVE_COMPLETED = "test_drive_completed"


class AuditLog(Base):
    """Audit trail for test ride events - tracks every step of the intake wizard."""
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Wizard session (for bookings that never commit)
    session_id = Column(String(100), index=True)

    # Test drive (null until the booking commits)
    test_drive_id = Column(Integer, index=True)

    # Event details
    event = Column(
        Enum(AuditLogEvent, values_callable=_enum_values, name="auditlogevent"),
        nullable=False,
        index=True,
    )
    event_data = Column(Text)  # JSON blob with event-specific data

    # User context
    ip_address = Column(String(45))  # IPv6 compatible
    user_agent = Column(String(500))

    # Timestamp
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    def __repr__(self):
        return f"<AuditLog {self.event.value} - {self.test_drive_id or self.session_id}>"


class ErrorSeverity(enum.Enum):
    """Severity levels for error logs."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorLog(Base):
    """Error log for API and service errors."""
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, index=True)

    # Error classification
    severity = Column(
        Enum(ErrorSeverity, values_callable=_enum_values, name="errorseverity"),
        default=ErrorSeverity.ERROR,
        nullable=False,
        index=True,
    )
    error_type = Column(String(100), nullable=False, index=True)  # e.g., "stripe", "storage", "compensation"
    error_code = Column(String(50))  # HTTP status or custom code

    # Error details
    message = Column(Text, nullable=False)
    stack_trace = Column(Text)
    request_data = Column(Text)  # JSON blob with sanitized request data

    # Context
    endpoint = Column(String(200), index=True)
    session_id = Column(String(100))
    test_drive_id = Column(Integer, index=True)
    customer_id = Column(Integer, index=True)
    ip_address = Column(String(45))
    user_agent = Column(String(500))

    # Timestamp
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    def __repr__(self):
        return f"<ErrorLog {self.severity.value} - {self.error_type}: {self.message[:50]}>"
