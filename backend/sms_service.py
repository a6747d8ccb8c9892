"""
SMS notifications for test rides.

Two providers sit behind one interface: TextBelt (plain HTTPS API, the
default) and Twilio. The provider is picked once per process from
settings.sms_provider. A failed send is returned as an SMSResponse with
success=False and never raised; the booking it belongs to is already
committed.
"""
import asyncio
import logging
import re
import time
from functools import lru_cache
from typing import Optional

import httpx
from pydantic import BaseModel
from requests.exceptions import RequestException
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client

from config import get_settings

logger = logging.getLogger(__name__)


class SMSMessage(BaseModel):
    to: str
    body: str


class SMSResponse(BaseModel):
    success: bool
    message_id: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None
    provider: Optional[str] = None


def format_phone_number(phone: str) -> str:
    """
    Normalize a US phone number to E.164.

    10 digits get +1, 11 digits starting with 1 get +, an already
    international number is kept, anything else with at least 10 digits
    keeps its last ten. Shorter input is returned unchanged.
    """
    if not phone:
        return phone
    phone = phone.strip()
    digits = re.sub(r"\D", "", phone)

    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    if phone.startswith("+") and len(digits) >= 10:
        return phone
    if len(digits) >= 10:
        return f"+1{digits[-10:]}"
    return phone


# ============== PROVIDERS ==============

class SMSProvider:
    """Base class for SMS providers."""

    name = "base"

    def is_configured(self) -> bool:
        raise NotImplementedError

    async def send_sms(self, message: SMSMessage) -> SMSResponse:
        raise NotImplementedError


class TextBeltProvider(SMSProvider):
    """TextBelt HTTP API."""

    name = "textbelt"

    def __init__(self, api_key: str = None, url: str = None, timeout: float = None):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.textbelt_api_key
        self.url = url or settings.textbelt_url
        self.timeout = timeout or settings.sms_timeout_seconds

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send_sms(self, message: SMSMessage) -> SMSResponse:
        if not self.is_configured():
            return SMSResponse(
                success=False,
                error="TextBelt not configured. Please set TEXTBELT_API_KEY.",
                provider=self.name,
            )

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    self.url,
                    json={
                        "phone": message.to,
                        "message": message.body,
                        "key": self.api_key,
                    },
                    timeout=self.timeout,
                )
            result = response.json()
        except httpx.TimeoutException:
            logger.warning(f"TextBelt timed out sending to {message.to}")
            return SMSResponse(success=False, status="failed", error="SMS provider timed out", provider=self.name)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"TextBelt error sending to {message.to}: {e}")
            return SMSResponse(success=False, status="failed", error=str(e), provider=self.name)

        if result.get("success"):
            logger.info(f"SMS sent to {message.to} via TextBelt, quota remaining: {result.get('quotaRemaining')}")
            return SMSResponse(
                success=True,
                message_id=str(result.get("textId") or f"tb_{int(time.time() * 1000)}"),
                status="sent",
                provider=self.name,
            )

        logger.warning(f"TextBelt rejected SMS to {message.to}: {result.get('error')}")
        return SMSResponse(
            success=False,
            status="failed",
            error=result.get("error") or "TextBelt SMS failed",
            provider=self.name,
        )


class TwilioProvider(SMSProvider):
    """Twilio REST API. The client is blocking, so sends run on a worker thread."""

    name = "twilio"

    def __init__(self, account_sid: str = None, auth_token: str = None, from_number: str = None,
                 timeout: float = None):
        settings = get_settings()
        self.account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
        self.auth_token = auth_token if auth_token is not None else settings.twilio_auth_token
        self.from_number = from_number if from_number is not None else settings.twilio_phone_number
        self.timeout = timeout or settings.sms_timeout_seconds
        self.client = Client(self.account_sid, self.auth_token) if self.is_configured() else None

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def _send_sync(self, message: SMSMessage):
        return self.client.messages.create(body=message.body, from_=self.from_number, to=message.to)

    async def send_sms(self, message: SMSMessage) -> SMSResponse:
        if not self.is_configured():
            return SMSResponse(
                success=False,
                error="Twilio not configured. Please set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_PHONE_NUMBER.",
                provider=self.name,
            )

        try:
            twilio_message = await asyncio.wait_for(
                asyncio.to_thread(self._send_sync, message),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Twilio timed out sending to {message.to}")
            return SMSResponse(success=False, status="failed", error="SMS provider timed out", provider=self.name)
        except TwilioRestException as e:
            logger.error(f"Twilio error sending SMS to {message.to}: {e}")
            return SMSResponse(success=False, status="failed", error=e.msg or str(e), provider=self.name)
        except (TwilioException, RequestException) as e:
            logger.error(f"Twilio transport error sending SMS to {message.to}: {e}")
            return SMSResponse(success=False, status="failed", error=str(e) or type(e).__name__, provider=self.name)

        logger.info(f"SMS sent to {message.to}, SID: {twilio_message.sid}")
        return SMSResponse(
            success=True,
            message_id=twilio_message.sid,
            status=getattr(twilio_message, "status", None) or "sent",
            provider=self.name,
        )


# ============== SERVICE ==============

class SMSService:
    """Test ride messages on top of the configured provider."""

    def __init__(self, provider: SMSProvider, shop_name: str = None):
        self.provider = provider
        self.shop_name = shop_name or get_settings().shop_name

    @property
    def provider_name(self) -> str:
        return self.provider.name

    def is_configured(self) -> bool:
        return self.provider.is_configured()

    async def send_sms(self, phone: str, body: str) -> SMSResponse:
        return await self.provider.send_sms(SMSMessage(to=format_phone_number(phone), body=body))

    def confirmation_message(self, return_time: str, location: str) -> str:
        return (
            f"🚴 Your {self.shop_name} test ride has started! Please return by {return_time}. "
            f"Location: {location}. Questions? Reply to this message."
        )

    def completion_message(self) -> str:
        return (
            f"✅ Thank you for your {self.shop_name} test ride! We hope you enjoyed it. "
            f"Come back soon for another ride!"
        )

    async def send_test_ride_confirmation(self, phone: str, return_time: str, location: str = None) -> SMSResponse:
        location = location or get_settings().shop_location
        return await self.send_sms(phone, self.confirmation_message(return_time, location))

    def reminder_message(self, return_time: str) -> str:
        return f"⏰ Reminder: Your {self.shop_name} test ride ends at {return_time}. Please return the bike on time."

    async def send_test_ride_reminder(self, phone: str, return_time: str) -> SMSResponse:
        return await self.send_sms(phone, self.reminder_message(return_time))

    async def send_test_ride_completion(self, phone: str) -> SMSResponse:
        return await self.send_sms(phone, self.completion_message())


def build_provider(name: str) -> SMSProvider:
    if name == "twilio":
        return TwilioProvider()
    return TextBeltProvider()


@lru_cache()
def get_sms_service() -> SMSService:
    """Get the process-wide SMS service; the provider is fixed at first use."""
    settings = get_settings()
    service = SMSService(build_provider(settings.sms_provider))
    if not service.is_configured():
        logger.info(f"SMS provider {service.provider_name} is not configured - messages will not be sent")
    return service
