"""Responder speech-to-text: fetch the Twilio recording, then transcribe it."""

from __future__ import annotations

import asyncio
import logging

import httpx

from config import Settings

logger = logging.getLogger(__name__)

STT_URL = "https://waves-api.smallest.ai/api/v1/lightning/get_text?model=lightning&language=en"


class TranscriptionError(Exception):
    """Speech-to-text failed for this turn."""


class RecordingNotReady(TranscriptionError):
    """The recording was still unavailable after the retry ceiling."""


class Transcriber:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def download_recording(self, recording_url: str) -> bytes:
        """Fetch ``<RecordingUrl>.mp3``; Twilio may 404 for a few seconds after the callback."""
        url = recording_url if recording_url.endswith(".mp3") else f"{recording_url}.mp3"
        auth = None
        if self.settings.twilio_account_sid and self.settings.twilio_auth_token:
            auth = (self.settings.twilio_account_sid, self.settings.twilio_auth_token)

        attempts = max(self.settings.recording_retries, 1)
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            for attempt in range(1, attempts + 1):
                try:
                    res = await client.get(url, auth=auth)
                    if res.status_code == 200:
                        return res.content
                    logger.info("Recording not ready (attempt %d/%d): status=%s", attempt, attempts, res.status_code)
                except httpx.HTTPError as e:
                    logger.warning("Recording download error (attempt %d/%d): %s", attempt, attempts, e)
                if attempt < attempts:
                    await asyncio.sleep(self.settings.recording_retry_delay)

        raise RecordingNotReady(f"Recording not ready after {attempts} retries")

    async def transcribe_audio(self, audio: bytes, content_type: str = "audio/mpeg") -> str:
        if not self.settings.smallest_ai_api_key:
            raise TranscriptionError("SMALLEST_AI_API_KEY not configured")

        try:
            async with httpx.AsyncClient(timeout=30.0) as client:
                res = await client.post(
                    STT_URL,
                    headers={
                        "Authorization": f"Bearer {self.settings.smallest_ai_api_key}",
                        "Content-Type": content_type,
                    },
                    content=audio,
                )
                res.raise_for_status()
                body = res.json()
        except (httpx.HTTPError, ValueError) as e:
            raise TranscriptionError(str(e)) from e

        # No speech is a valid (empty) observation
        return (body.get("transcription") or "").strip()

    async def transcribe_recording(self, recording_url: str) -> str:
        audio = await self.download_recording(recording_url)
        return await self.transcribe_audio(audio)
