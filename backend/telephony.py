"""Twilio voice: outbound call placement, forced hang-up and TwiML rendering."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlencode
from uuid import uuid4

from twilio.base.exceptions import TwilioException
from twilio.rest import Client as TwilioClient
from twilio.twiml.voice_response import VoiceResponse

from config import Settings
from models import Hangup, Pause, Record, RedirectToPoll, Speak

logger = logging.getLogger(__name__)

STATUS_CALLBACK_EVENTS = ["initiated", "ringing", "answered", "completed"]

# REST errors and transport failures (requests errors are OSError subclasses)
TWILIO_ERRORS = (TwilioException, OSError)


class TelephonyError(Exception):
    """Twilio rejected a call operation or could not be reached."""


class TwilioTelephony:
    def __init__(self, settings: Settings):
        self.settings = settings
        self._client: TwilioClient | None = None

    def _get_client(self) -> TwilioClient | None:
        if self._client is not None:
            return self._client
        if self.settings.twilio_account_sid and self.settings.twilio_auth_token:
            self._client = TwilioClient(self.settings.twilio_account_sid, self.settings.twilio_auth_token)
            return self._client
        logger.warning("Twilio credentials not configured, calls will be logged only")
        return None

    # -----------------------------------------------------------------------
    # Callback URLs
    # -----------------------------------------------------------------------
    def voice_url(self, session_id: str, summary: str) -> str:
        return self.settings.callback_url("/sos/twiml-voice?" + urlencode({"session_id": session_id, "msg": summary}))

    def recording_url(self, session_id: str) -> str:
        return self.settings.callback_url("/sos/handle-recording?" + urlencode({"session_id": session_id}))

    def poll_url(self, session_id: str) -> str:
        return self.settings.callback_url("/sos/check-response?" + urlencode({"session_id": session_id}))

    def status_url(self) -> str:
        return self.settings.callback_url("/sos/call-status")

    # -----------------------------------------------------------------------
    # REST operations
    # -----------------------------------------------------------------------
    def place_call(self, to_number: str, session_id: str, summary: str) -> str:
        """Dial the emergency number. Returns the Twilio call sid."""
        client = self._get_client()
        if client is None or not self.settings.twilio_from_number:
            mock_sid = f"mock_call_{uuid4().hex[:8]}"
            logger.warning("[MOCK CALL] Would call %s for session %s (sid=%s)", to_number, session_id, mock_sid)
            return mock_sid

        try:
            call = client.calls.create(
                to=to_number,
                from_=self.settings.twilio_from_number,
                url=self.voice_url(session_id, summary),
                method="POST",
                status_callback=self.status_url(),
                status_callback_event=STATUS_CALLBACK_EVENTS,
                status_callback_method="POST",
            )
        except TWILIO_ERRORS as e:
            raise TelephonyError(str(e)) from e
        logger.info("Outbound call placed: sid=%s session=%s", call.sid, session_id)
        return call.sid

    def hangup(self, call_sid: str) -> None:
        client = self._get_client()
        if client is None:
            logger.warning("[MOCK HANGUP] Would complete call %s", call_sid)
            return
        try:
            client.calls(call_sid).update(status="completed")
        except TWILIO_ERRORS as e:
            raise TelephonyError(str(e)) from e
        logger.info("Call %s forced to completed", call_sid)

    # -----------------------------------------------------------------------
    # TwiML
    # -----------------------------------------------------------------------
    def render(self, session_id: str, effects: list) -> str:
        """Turn the speech effects of a transition into a TwiML document."""
        vr = VoiceResponse()
        for effect in effects:
            if isinstance(effect, Speak):
                vr.say(effect.text, voice=self.settings.twilio_voice)
            elif isinstance(effect, Record):
                vr.record(
                    timeout=self.settings.record_timeout,
                    max_length=self.settings.record_max_length,
                    action=self.recording_url(session_id),
                    method="POST",
                )
            elif isinstance(effect, Pause):
                vr.pause(length=effect.seconds or self.settings.wait_pause_seconds)
            elif isinstance(effect, RedirectToPoll):
                vr.redirect(self.poll_url(session_id), method="POST")
            elif isinstance(effect, Hangup):
                vr.hangup()
        return str(vr)


def render_notice(text: str, voice: Optional[str] = None) -> str:
    """Standalone spoken notice for requests that never reach a session."""
    vr = VoiceResponse()
    if voice:
        vr.say(text, voice=voice)
    else:
        vr.say(text)
    vr.hangup()
    return str(vr)
