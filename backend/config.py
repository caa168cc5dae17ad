"""Process-wide settings, loaded once from the environment and passed to every adapter."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

env_path = Path(__file__).parent / ".env"


class Settings(BaseModel):
    # Public URL Twilio uses to reach our webhooks
    public_base_url: str = "http://localhost:8000"
    # Host of the live chat view linked from SMS alerts
    app_url: str = "localhost:3000"

    # ---------------------------------------------------------------------------
    # Twilio
    # ---------------------------------------------------------------------------
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    twilio_voice: str = "Polly.Joanna"

    # ---------------------------------------------------------------------------
    # Model + speech providers
    # ---------------------------------------------------------------------------
    openrouter_api_key: str = ""
    summary_model: str = "openai/gpt-oss-20b:free"
    factual_model: str = "meta-llama/llama-3.3-70b-instruct:free"
    smallest_ai_api_key: str = ""

    # ---------------------------------------------------------------------------
    # Call script tuning
    # ---------------------------------------------------------------------------
    recording_retries: int = 3
    recording_retry_delay: float = 3.0
    record_timeout: int = 10
    record_max_length: int = 60
    wait_pause_seconds: int = 5
    max_call_seconds: int = 3600

    # ---------------------------------------------------------------------------
    # Outbox + live feed
    # ---------------------------------------------------------------------------
    outbox_poll_seconds: float = 10.0
    outbox_max_attempts: int = 5
    feed_poll_seconds: float = 1.0

    def callback_url(self, path: str) -> str:
        return f"{self.public_base_url.rstrip('/')}{path}"

    def live_view_link(self, session_id: str) -> str:
        return f"https://{self.app_url}?session={session_id}"


def load_settings() -> Settings:
    """Build settings from ``backend/.env`` and the process environment."""
    load_dotenv(dotenv_path=env_path)
    return Settings(
        public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
        app_url=os.getenv("APP_URL", "localhost:3000"),
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        twilio_from_number=os.getenv("TWILIO_FROM_NUMBER", ""),
        twilio_voice=os.getenv("TWILIO_VOICE", "Polly.Joanna"),
        openrouter_api_key=os.getenv("OPENROUTER_API_KEY", ""),
        summary_model=os.getenv("SUMMARY_LLM_MODEL", "openai/gpt-oss-20b:free"),
        factual_model=os.getenv("FACTUAL_LLM_MODEL", "meta-llama/llama-3.3-70b-instruct:free"),
        smallest_ai_api_key=os.getenv("SMALLEST_AI_API_KEY", ""),
        recording_retries=int(os.getenv("RECORDING_RETRIES", "3")),
        recording_retry_delay=float(os.getenv("RECORDING_RETRY_DELAY", "3.0")),
        record_timeout=int(os.getenv("RECORD_TIMEOUT", "10")),
        record_max_length=int(os.getenv("RECORD_MAX_LENGTH", "60")),
        wait_pause_seconds=int(os.getenv("WAIT_PAUSE_SECONDS", "5")),
        max_call_seconds=int(os.getenv("MAX_CALL_SECONDS", "3600")),
        outbox_poll_seconds=float(os.getenv("OUTBOX_POLL_SECONDS", "10")),
        outbox_max_attempts=int(os.getenv("OUTBOX_MAX_ATTEMPTS", "5")),
        feed_poll_seconds=float(os.getenv("FEED_POLL_SECONDS", "1.0")),
    )
