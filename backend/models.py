"""
Data models for the test ride booking system.
"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class CustomerFields(BaseModel):
    """Customer row to insert for a booking."""
    name: str
    phone: str
    email: Optional[str] = None
    id_photo_url: str
    signature_data: str
    waiver_url: Optional[str] = None
    waiver_signed: bool
    submission_ip: Optional[str] = None
    submitted_at: Optional[datetime] = None

    @field_validator('name', 'phone', 'id_photo_url', 'signature_data')
    @classmethod
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError("must not be empty")
        return v

    @field_validator('email', mode='before')
    @classmethod
    def empty_email_is_none(cls, v):
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @model_validator(mode='after')
    def signed_waiver_has_artifacts(self):
        if self.waiver_signed and not (self.waiver_url and self.signature_data):
            raise ValueError("a signed waiver requires waiver_url and signature_data")
        return self


class TestDriveFields(BaseModel):
    """Test drive row to insert for a booking."""
    __test__ = False

    bike_model: str
    start_time: datetime
    end_time: datetime
    duration_minutes: Optional[int] = None
    stripe_payment_intent_id: Optional[str] = None
    authorization_amount_cents: Optional[int] = None

    @model_validator(mode='after')
    def ends_after_start(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class BookingSummary(BaseModel):
    """What the success screen shows once a booking has committed."""
    customer_id: int
    test_drive_id: int
    customer_name: str
    phone: str
    bike_model: str
    bike_name: str
    start_time: datetime
    return_time: datetime
    return_time_display: str
    location: str
    confirmation_sent: bool
    confirmation_message: str


# ============== API REQUESTS / RESPONSES ==============

class ContactRequest(BaseModel):
    """Contact step input."""
    name: str = ""
    phone: str = ""
    email: Optional[str] = None


class BikeSelectionRequest(BaseModel):
    """Bike selection step input."""
    bike_model: str = ""


class SignatureRequest(BaseModel):
    """Signature drawn on the pad, serialized as a PNG data URL on pointer-up."""
    signature_data: str


class WaiverAcceptRequest(BaseModel):
    """Waiver modal checkbox."""
    agreed: bool


class PaymentConfirmRequest(BaseModel):
    """Payment method collected by the hosted payment element."""
    payment_method: str


class CreatePaymentIntentRequest(BaseModel):
    """Request body for POST /api/create-payment-intent."""
    amount: int
    customer_email: str = Field(alias="customerEmail")
    idempotency_key: str = Field(alias="idempotencyKey")

    class Config:
        populate_by_name = True


class CreatePaymentIntentResponse(BaseModel):
    """Response body for POST /api/create-payment-intent."""
    client_secret: str = Field(alias="clientSecret")
    payment_intent_id: str = Field(alias="paymentIntentId")

    class Config:
        populate_by_name = True


class SendSMSRequest(BaseModel):
    """Request body for POST /api/send-sms."""
    phone: Optional[str] = None
    message: Optional[str] = None
