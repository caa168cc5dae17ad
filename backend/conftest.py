from __future__ import annotations

import asyncio
import importlib
import sys
from pathlib import Path
from typing import Any

import httpx
import pytest

APP_MODULES = (
    "main",
    "chat",
    "qa",
    "scheduler",
    "escalation",
    "orchestrator",
    "store",
    "database",
    "telephony",
    "transcriber",
    "completion",
    "notifier",
    "config",
    "models",
)

CLEARED_ENV = (
    "TWILIO_ACCOUNT_SID",
    "TWILIO_AUTH_TOKEN",
    "TWILIO_FROM_NUMBER",
    "OPENROUTER_API_KEY",
    "SMALLEST_AI_API_KEY",
)


class FakeCompletion:
    """In-memory stand-in for CompletionClient."""

    def __init__(self, models_module):
        self.models = models_module
        self.summary = "I am WhisprNet, a voice assistant conveying an urgent message from a user in need."
        self.reply: Any = None
        self.reply_error: Exception | None = None
        self.verdict: Any = None
        self.answer = "She is in the kitchen."
        self.calls: list[tuple[str, Any]] = []

    async def summarize_incident(self, situation, location, threats):
        self.calls.append(("summary", (situation, location, threats)))
        return self.summary

    async def answer_as_victim(self, question, context):
        self.calls.append(("reply", (question, list(context))))
        await asyncio.sleep(0)
        if self.reply_error is not None:
            raise self.reply_error
        if self.reply is not None:
            return self.reply
        return self.models.InsufficientContext()

    async def judge_escalation(self, chat, location):
        self.calls.append(("judge", (list(chat), location)))
        # Yield so concurrent callers interleave before the latch is claimed
        await asyncio.sleep(0)
        return self.verdict

    async def answer_question(self, session_id, question, context):
        self.calls.append(("qa", (session_id, question, list(context))))
        return self.answer


class FakeTranscriber:
    def __init__(self):
        self.transcript = ""
        self.error: Exception | None = None
        self.urls: list[str] = []

    async def transcribe_recording(self, recording_url):
        self.urls.append(recording_url)
        if self.error is not None:
            raise self.error
        return self.transcript


@pytest.fixture()
def app_ctx(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """Import backend.main with an isolated DB and fake external adapters."""
    db_path = tmp_path / "test_whisprnet.db"
    monkeypatch.setenv("WHISPRNET_DB_PATH", str(db_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://hooks.test")
    monkeypatch.setenv("APP_URL", "whisprnet.test")
    for name in CLEARED_ENV:
        monkeypatch.setenv(name, "")

    for module_name in APP_MODULES:
        sys.modules.pop(module_name, None)

    main = importlib.import_module("main")
    models = importlib.import_module("models")
    telephony_mod = importlib.import_module("telephony")
    notifier_mod = importlib.import_module("notifier")

    class FakeTelephony(telephony_mod.TwilioTelephony):
        def __init__(self, settings):
            super().__init__(settings)
            self.placed: list[tuple[str, str, str]] = []
            self.hung_up: list[str] = []
            self.fail_place = False
            self.fail_hangup = False

        def place_call(self, to_number, session_id, summary):
            if self.fail_place:
                raise telephony_mod.TelephonyError("Twilio unavailable")
            self.placed.append((to_number, session_id, summary))
            return f"CA{len(self.placed):04d}"

        def hangup(self, call_sid):
            if self.fail_hangup:
                raise telephony_mod.TelephonyError("Twilio unavailable")
            self.hung_up.append(call_sid)

    class FakeNotifier(notifier_mod.SmsNotifier):
        def __init__(self, settings):
            super().__init__(settings)
            self.sent: list[tuple[str, str]] = []
            self.failing: set[str] = set()

        def send_sms(self, to_number, body):
            if to_number in self.failing:
                return False
            self.sent.append((to_number, body))
            return True

    main.init_db()
    main.telephony = FakeTelephony(main.settings)
    main.notifier = FakeNotifier(main.settings)
    main.completion = FakeCompletion(models)
    main.transcriber = FakeTranscriber()
    return main


@pytest.fixture()
def db(app_ctx):
    from database import SessionLocal

    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def api_request(app_ctx):
    """Synchronous request helper for the FastAPI app."""

    def _request(method: str, path: str, **kwargs) -> httpx.Response:
        async def _run() -> httpx.Response:
            transport = httpx.ASGITransport(app=app_ctx.app)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
                return await client.request(method, path, **kwargs)

        return asyncio.run(_run())

    return _request


@pytest.fixture()
def create_sos(api_request):
    """Submit an SOS with sensible defaults; keyword overrides go into the body."""

    def _create(session_id: str = "s1", **overrides) -> httpx.Response:
        body = {
            "session_id": session_id,
            "situation": "Someone is trying to break into my house",
            "location": "221B Baker Street, London",
            "number_of_threat": 1,
            "call_number": "+15550100",
            "emergency_contact_1": "+100",
            "emergency_contact_2": "",
        }
        body.update(overrides)
        return api_request("POST", "/sos", json=body)

    return _create


@pytest.fixture()
def live_session(app_ctx, create_sos, db):
    """A placed call that Twilio reports as answered."""
    import store
    from models import CallStatus

    create_sos("live1")
    session = store.get_session(db, "live1")
    store.update_call_status(db, session.call_sid, CallStatus.IN_PROGRESS)
    return "live1"
