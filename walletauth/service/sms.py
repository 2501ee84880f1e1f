from __future__ import annotations

import re
from typing import Optional

import httpx

from walletauth.logging import get_logger

logger = get_logger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{7,14}$")


def is_e164(number: str) -> bool:
    return bool(number and E164_PATTERN.match(number))


class SMSService:
    """Sends one-time codes through the Twilio Messages REST API.

    Like :class:`EmailService`, it logs instead of sending when credentials are
    missing. ``send_code`` returns False on transport errors, timeouts and
    non-2xx responses; it never raises for delivery problems.
    """

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        api_base: str = "https://api.twilio.com",
        brand: str = "DwayBank",
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.api_base = api_base.rstrip("/")
        self.brand = brand
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    @staticmethod
    def _redact_number(number: str) -> str:
        return f"{number[:3]}***{number[-2:]}" if len(number) > 5 else "redacted"

    async def send_code(self, to_number: str, code: str, *, ttl_minutes: int = 5) -> bool:
        body = (
            f"Your {self.brand} verification code is {code}. "
            f"It expires in {ttl_minutes} minutes. Never share this code."
        )
        if not self.is_configured:
            logger.info("sms_dev_mode", to=self._redact_number(to_number))
            return True

        url = f"{self.api_base}/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_seconds,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    url,
                    data={"To": to_number, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
                response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.error("sms_timeout", to=self._redact_number(to_number), error=str(e))
            return False
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_provider_rejected",
                to=self._redact_number(to_number),
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_send_failed",
                to=self._redact_number(to_number),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("sms_sent", to=self._redact_number(to_number))
        return True
