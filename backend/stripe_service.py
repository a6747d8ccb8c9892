"""
Stripe payment integration for test ride authorization holds.

A hold is a PaymentIntent created with manual capture: the card is
authorized for a small fixed amount and never charged unless staff capture
it. Handles intent creation, confirmation, status checks, hold release and
webhook verification.
"""
import stripe
from typing import Optional
from pydantic import BaseModel

from config import get_settings, is_stripe_configured


HOLD_METADATA_TYPE = "test_ride_hold"


# Initialize Stripe with API key
def init_stripe():
    """Initialize Stripe with the secret key."""
    settings = get_settings()
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key


class AuthorizationRequest(BaseModel):
    """Request to place an authorization hold."""
    # Amount in cents (e.g., 100 for $1.00)
    amount: int
    customer_email: str
    # Scopes Stripe's idempotency: one key per Payment step mount
    idempotency_key: str


class AuthorizationResponse(BaseModel):
    """Response containing payment intent details."""
    client_secret: str
    payment_intent_id: str
    amount: int
    currency: str
    status: str


class PaymentStatus(BaseModel):
    """Payment status information."""
    payment_intent_id: str
    status: str
    amount: int
    amount_capturable: int = 0
    currency: str
    customer_email: Optional[str] = None


def create_payment_intent(request: AuthorizationRequest) -> AuthorizationResponse:
    """
    Create a Stripe PaymentIntent that places a refundable hold.

    Args:
        request: Amount, customer email and idempotency key

    Returns:
        AuthorizationResponse with client_secret for the frontend

    Raises:
        ValueError: If the amount is not positive or Stripe is not configured
        stripe.StripeError: If the Stripe API call fails
    """
    if request.amount <= 0:
        raise ValueError("Amount must be a positive number of cents.")

    init_stripe()

    if not is_stripe_configured():
        raise ValueError("Stripe is not configured. Please set STRIPE_SECRET_KEY.")

    settings = get_settings()

    intent = stripe.PaymentIntent.create(
        amount=request.amount,
        currency=settings.currency,
        capture_method="manual",
        automatic_payment_methods={"enabled": True},
        metadata={
            "type": HOLD_METADATA_TYPE,
            "customer_email": request.customer_email,
            "idempotency_key": request.idempotency_key,
        },
        receipt_email=request.customer_email or None,
        description=f"Test Ride Hold - {request.customer_email}",
        idempotency_key=request.idempotency_key,
    )

    return AuthorizationResponse(
        client_secret=intent.client_secret,
        payment_intent_id=intent.id,
        amount=intent.amount,
        currency=intent.currency,
        status=intent.status,
    )


def confirm_payment_intent(payment_intent_id: str, payment_method: str, return_url: str = None):
    """
    Confirm a PaymentIntent with the payment method the customer entered.

    Returns the PaymentIntent. Step-up authentication leaves it in
    requires_action; the hosted element handles that and the status is
    re-read afterwards with get_payment_status.

    Raises:
        stripe.CardError: The card was declined
        stripe.StripeError: Any other Stripe failure
    """
    init_stripe()

    params = {"payment_method": payment_method}
    if return_url:
        params["return_url"] = return_url

    return stripe.PaymentIntent.confirm(payment_intent_id, **params)


def get_payment_status(payment_intent_id: str) -> PaymentStatus:
    """
    Get the status of a payment intent.

    Args:
        payment_intent_id: The Stripe PaymentIntent ID

    Returns:
        PaymentStatus with current status
    """
    init_stripe()

    intent = stripe.PaymentIntent.retrieve(payment_intent_id)

    return PaymentStatus(
        payment_intent_id=intent.id,
        status=intent.status,
        amount=intent.amount,
        amount_capturable=intent.amount_capturable or 0,
        currency=intent.currency,
        customer_email=intent.receipt_email,
    )


def cancel_payment_intent(payment_intent_id: str) -> dict:
    """
    Release an authorization hold by cancelling its PaymentIntent.

    Never raises: an intent that was already canceled or captured comes
    back as success=False with the Stripe message.
    """
    init_stripe()

    try:
        intent = stripe.PaymentIntent.cancel(payment_intent_id)
        return {
            "success": True,
            "payment_intent_id": intent.id,
            "status": intent.status,
        }
    except stripe.StripeError as e:
        return {
            "success": False,
            "payment_intent_id": payment_intent_id,
            "error": str(e),
        }


def verify_webhook_signature(payload: bytes, sig_header: str) -> dict:
    """
    Verify a Stripe webhook signature and return the event.

    Args:
        payload: Raw request body
        sig_header: Stripe-Signature header value

    Returns:
        The verified Stripe event

    Raises:
        stripe.SignatureVerificationError: If signature is invalid
    """
    init_stripe()
    settings = get_settings()

    event = stripe.Webhook.construct_event(
        payload,
        sig_header,
        settings.stripe_webhook_secret,
    )

    return event
