"""
Client half of the payment authorization: confirms the hold and maps the
gateway outcome to what the Payment step shows.

One PaymentConfirmation exists per Payment step mount. It owns a single
PaymentIntent and moves idle -> processing -> completed | failed. A submit
while processing or completed is ignored, so a double click can never
confirm the same intent twice.
"""
import asyncio
import enum
import logging
from typing import Callable, Optional

import stripe
from pydantic import BaseModel

from config import get_settings
from stripe_service import confirm_payment_intent, get_payment_status

logger = logging.getLogger(__name__)


PROCESSING_MESSAGE = "Payment is being processed. Please wait..."
REQUIRES_ACTION_MESSAGE = "Payment requires additional verification. Please complete the authentication."
CANCELED_MESSAGE = "Payment was canceled. Please try again."
INVALID_REQUEST_MESSAGE = "Payment request invalid. Please try again."
GENERIC_FAILURE_MESSAGE = "Payment processing failed. Please try again."
TIMEOUT_MESSAGE = "Payment is still processing. Please wait and check again."

# A manual-capture intent stops at requires_capture once authorized
AUTHORIZED_STATUSES = ("succeeded", "requires_capture")


class ConfirmationState(str, enum.Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ConfirmationResult(BaseModel):
    """What the Payment step renders after a submit or refresh."""
    state: ConfirmationState
    payment_intent_id: str
    message: Optional[str] = None
    gateway_status: Optional[str] = None


def map_intent_status(status: str) -> tuple:
    """Map a PaymentIntent status to (state, message)."""
    if status in AUTHORIZED_STATUSES:
        return ConfirmationState.COMPLETED, None
    if status == "processing":
        return ConfirmationState.PROCESSING, PROCESSING_MESSAGE
    if status == "requires_action":
        return ConfirmationState.PROCESSING, REQUIRES_ACTION_MESSAGE
    if status == "canceled":
        return ConfirmationState.FAILED, CANCELED_MESSAGE
    return ConfirmationState.FAILED, f"Unexpected payment status: {status}. Please check with support."


class PaymentConfirmation:
    """
    Confirmation driver for one authorization hold.

    on_success is called once, with the result, the first time the hold is
    authorized (from submit or refresh).
    """

    def __init__(
        self,
        payment_intent_id: str,
        client_secret: str = None,
        on_success: Optional[Callable[[ConfirmationResult], None]] = None,
        timeout_seconds: float = None,
        return_url: str = None,
    ):
        self.payment_intent_id = payment_intent_id
        self.client_secret = client_secret
        self.on_success = on_success
        self.timeout_seconds = timeout_seconds or get_settings().payment_timeout_seconds
        self.return_url = return_url
        self.state = ConfirmationState.IDLE
        self.message: Optional[str] = None
        self.gateway_status: Optional[str] = None
        self.confirm_calls = 0
        self._in_flight = False
        self._success_reported = False

    @property
    def in_flight(self) -> bool:
        """A confirm call is waiting on the gateway."""
        return self._in_flight

    @property
    def result(self) -> ConfirmationResult:
        return ConfirmationResult(
            state=self.state,
            payment_intent_id=self.payment_intent_id,
            message=self.message,
            gateway_status=self.gateway_status,
        )

    async def submit(self, payment_method: str) -> ConfirmationResult:
        """
        Confirm the hold with the entered payment method.

        Ignored (returns the current result) while processing or after the
        hold is authorized. A failed attempt can be resubmitted.
        """
        if self.state in (ConfirmationState.PROCESSING, ConfirmationState.COMPLETED):
            logger.info(f"Ignoring submit for {self.payment_intent_id} in state {self.state.value}")
            return self.result

        # Set before the first await so a concurrent submit sees it
        self.state = ConfirmationState.PROCESSING
        self.message = None
        self._in_flight = True
        self.confirm_calls += 1

        try:
            intent = await asyncio.wait_for(
                asyncio.to_thread(
                    confirm_payment_intent,
                    self.payment_intent_id,
                    payment_method,
                    self.return_url,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            # The intent may have been authorized; only refresh can tell
            logger.warning(f"Confirm timed out for {self.payment_intent_id}")
            self.message = TIMEOUT_MESSAGE
            return self.result
        except stripe.CardError as e:
            logger.info(f"Card declined for {self.payment_intent_id}: {e.user_message}")
            self._fail(e.user_message or str(e))
            return self.result
        except stripe.InvalidRequestError as e:
            logger.warning(f"Invalid confirm request for {self.payment_intent_id}: {e}")
            self._fail(INVALID_REQUEST_MESSAGE)
            return self.result
        except Exception as e:
            logger.error(f"Payment confirmation error for {self.payment_intent_id}: {e}")
            self._fail(GENERIC_FAILURE_MESSAGE)
            return self.result
        finally:
            self._in_flight = False

        self._apply_status(intent.status)
        return self.result

    async def refresh(self) -> ConfirmationResult:
        """
        Re-read the intent status without confirming again.

        Resolves a hold left in processing by step-up authentication, a
        delayed gateway or a timed out confirm.
        """
        if self.state != ConfirmationState.PROCESSING or self._in_flight:
            return self.result

        try:
            status = await asyncio.wait_for(
                asyncio.to_thread(get_payment_status, self.payment_intent_id),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Status check timed out for {self.payment_intent_id}")
            return self.result
        except stripe.StripeError as e:
            logger.warning(f"Status check failed for {self.payment_intent_id}: {e}")
            return self.result

        self._apply_status(status.status)
        return self.result

    def _apply_status(self, status: str):
        self.gateway_status = status
        self.state, self.message = map_intent_status(status)
        logger.info(f"Payment {self.payment_intent_id} is {status} -> {self.state.value}")
        if self.state == ConfirmationState.COMPLETED and not self._success_reported:
            self._success_reported = True
            if self.on_success:
                self.on_success(self.result)

    def _fail(self, message: str):
        self.state = ConfirmationState.FAILED
        self.message = message
