"""
Twilio SMS client: lowest level, sends one message. Requires TWILIO_ACCOUNT_SID,
TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER in .env; is_configured() is False otherwise.
"""
import logging

import httpx

from app.config import settings
from app.core.errors import NotifierError

logger = logging.getLogger(__name__)

TWILIO_BASE_URL = "https://api.twilio.com/2010-04-01"


class TwilioSmsClient:
    """Send SMS through the Twilio Messages API."""

    def __init__(
        self,
        *,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        base_url: str = TWILIO_BASE_URL,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.account_sid = (account_sid if account_sid is not None else settings.twilio_account_sid).strip()
        self.auth_token = (auth_token if auth_token is not None else settings.twilio_auth_token).strip()
        self.from_number = (from_number if from_number is not None else settings.twilio_from_number).strip()
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def send_sms(self, to: str, body: str) -> str:
        """Send and return the Twilio message SID. Raises NotifierError on any failure."""
        if not self.is_configured():
            raise NotifierError("Twilio SMS not configured. Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER.")
        url = f"{self.base_url}/Accounts/{self.account_sid}/Messages.json"
        try:
            with httpx.Client(timeout=self._timeout, transport=self._transport) as client:
                resp = client.post(
                    url,
                    data={"To": to, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
        except httpx.HTTPError as e:
            raise NotifierError(f"Twilio request failed: {e}") from e
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        if not resp.is_success:
            detail = data.get("message") or (resp.text[:300] if resp.text else "")
            raise NotifierError(f"Twilio API error {resp.status_code}: {detail}")
        sid = data.get("sid")
        logger.info("SMS sent to %s...%s, sid=%s", to[:4], to[-2:], sid)
        return sid
