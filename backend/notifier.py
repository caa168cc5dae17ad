"""Emergency-contact notifications via Twilio SMS."""

from __future__ import annotations

import logging

from twilio.rest import Client as TwilioClient

from config import Settings

logger = logging.getLogger(__name__)


class SmsNotifier:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: TwilioClient | None = None

    def _get_client(self) -> TwilioClient | None:
        if self._client is not None:
            return self._client
        if self.settings.twilio_account_sid and self.settings.twilio_auth_token:
            self._client = TwilioClient(self.settings.twilio_account_sid, self.settings.twilio_auth_token)
            return self._client
        logger.warning("Twilio credentials not configured, SMS will be logged only")
        return None

    def send_sms(self, to_number: str, body: str) -> bool:
        """Send one SMS. Returns True if sent (or logged), False on error; never raises."""
        client = self._get_client()
        if client is None or not self.settings.twilio_from_number:
            logger.info("[MOCK SMS] To=%s | %s", to_number, body)
            return True

        try:
            message = client.messages.create(
                body=body,
                from_=self.settings.twilio_from_number,
                to=to_number,
            )
            logger.info("SMS sent: sid=%s to=%s", message.sid, to_number)
            return True
        except Exception:
            logger.exception("Failed to send escalation SMS to %s", to_number)
            return False

    def broadcast(self, contacts: list[str], body: str) -> list[str]:
        """Send ``body`` to every contact; returns the numbers that succeeded."""
        return [number for number in contacts if self.send_sms(number, body)]
