from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Form, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.orm import Session

import store
from chat import router as sessions_router
from completion import CompletionClient, CompletionError
from config import load_settings
from database import get_db, init_db
from escalation import EscalationEngine
from models import QuestionRequest, SessionIdRequest, SOSRequest
from notifier import SmsNotifier
from orchestrator import (
    MISSING_SESSION_NOTICE,
    CallOrchestrator,
    CallPlacementFailed,
    HangupRejected,
    on_turn_failure,
    wait_branch,
)
from qa import answer_contact_question
from scheduler import OutboxDispatcher, start_scheduler, stop_scheduler
from telephony import TelephonyError, TwilioTelephony, render_notice
from transcriber import Transcriber

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

settings = load_settings()

telephony = TwilioTelephony(settings)
transcriber = Transcriber(settings)
completion = CompletionClient(settings)
notifier = SmsNotifier(settings)


def get_orchestrator() -> CallOrchestrator:
    return CallOrchestrator(settings, telephony, transcriber, completion)


def get_escalation() -> EscalationEngine:
    return EscalationEngine(settings, completion, notifier)


def get_dispatcher() -> OutboxDispatcher:
    return OutboxDispatcher(settings, get_escalation())


async def dispatch_outbox() -> int:
    return await get_dispatcher().dispatch_pending()


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    start_scheduler(get_dispatcher())
    yield
    stop_scheduler()


app = FastAPI(title="WhisprNet API", version="0.1.0", lifespan=lifespan)
app.state.settings = settings

origins = [
    "http://localhost:3000",
    f"https://{settings.app_url}",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)


def twiml(content: str) -> Response:
    return Response(content=content, media_type="text/xml")


def _kick_outbox(orchestrator: CallOrchestrator, background_tasks: BackgroundTasks) -> None:
    if orchestrator.queued_events:
        background_tasks.add_task(dispatch_outbox)


# -----------------------------
# Routes
# -----------------------------

@app.get("/")
def read_root() -> dict[str, str]:
    return {"service": "WhisprNet API", "status": "ok"}


# =====================================================================
# SOS submission + Twilio voice callbacks
# =====================================================================
@app.post("/sos")
async def submit_sos(payload: SOSRequest, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """Create the session and place the emergency call. Repeat submissions are no-ops."""
    orchestrator = get_orchestrator()
    try:
        created = await orchestrator.start_session(db, payload)
    except CallPlacementFailed:
        _kick_outbox(orchestrator, background_tasks)
        return JSONResponse(status_code=502, content={"success": False, "error": "Failed to place outbound call"})

    _kick_outbox(orchestrator, background_tasks)
    logger.info("SOS submitted: session=%s created=%s", payload.session_id, created)
    return {"success": True}


@app.post("/sos/twiml-voice")
def twiml_voice(session_id: str = "", msg: Optional[str] = None, db: Session = Depends(get_db)):
    """Opening script once Twilio connects: speak the summary, then record."""
    return twiml(get_orchestrator().voice_script(db, session_id, msg))


@app.post("/sos/handle-recording")
async def handle_recording(
    session_id: str = "",
    recording_url: Optional[str] = Form(None, alias="RecordingUrl"),
    call_status: Optional[str] = Form(None, alias="CallStatus"),
    db: Session = Depends(get_db),
):
    """Transcribe the responder and answer for the victim, or hand over to the chat."""
    orchestrator = get_orchestrator()
    try:
        content = await orchestrator.handle_recording(db, session_id, recording_url, call_status)
    except Exception:
        # The responder is on a live line; answer with a spoken fallback, not a 500
        logger.exception("Error handling recording for session %s", session_id)
        db.rollback()
        transition = on_turn_failure()
        if store.get_session(db, session_id) is not None:
            orchestrator.apply(db, session_id, transition)
        content = orchestrator.render(session_id, transition)
    return twiml(content)


@app.post("/sos/check-response")
def check_response(background_tasks: BackgroundTasks, session_id: str = "", db: Session = Depends(get_db)):
    """Wait-poll: speak the oldest unsent victim message, or keep holding."""
    if not session_id:
        return twiml(render_notice(MISSING_SESSION_NOTICE, settings.twilio_voice))
    orchestrator = get_orchestrator()
    try:
        content = orchestrator.check_response(db, session_id)
    except Exception:
        # Keep the line open: hold and let Twilio poll again
        logger.exception("Error polling for victim reply in session %s", session_id)
        db.rollback()
        content = orchestrator.render(session_id, wait_branch())
    _kick_outbox(orchestrator, background_tasks)
    return twiml(content)


@app.post("/sos/call-status")
def call_status_webhook(
    call_sid: Optional[str] = Form(None, alias="CallSid"),
    call_status: Optional[str] = Form(None, alias="CallStatus"),
    db: Session = Depends(get_db),
):
    if call_sid and call_status:
        get_orchestrator().call_status(db, call_sid, call_status)
    return PlainTextResponse("OK")


@app.post("/sos/hangup")
def hangup_call(payload: SessionIdRequest, db: Session = Depends(get_db)):
    """Victim ended the emergency: force the call to completed."""
    if not payload.session_id:
        raise HTTPException(status_code=400, detail="Session ID is required")
    try:
        return get_orchestrator().hangup(db, payload.session_id)
    except store.SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except HangupRejected as e:
        raise HTTPException(status_code=400, detail=str(e))
    except TelephonyError as e:
        logger.error("Twilio hang-up failed for session %s: %s", payload.session_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to hang up call: {e}")


# =====================================================================
# Escalation stages (internal)
# =====================================================================
@app.post("/escalate-alert/initial")
def escalate_initial(payload: SessionIdRequest, db: Session = Depends(get_db)):
    if not payload.session_id:
        raise HTTPException(status_code=400, detail="Missing session_id")
    try:
        return get_escalation().run_initial(db, payload.session_id).model_dump()
    except store.SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")


@app.post("/escalate-alert/contextual")
async def escalate_contextual(payload: SessionIdRequest, db: Session = Depends(get_db)):
    if not payload.session_id:
        raise HTTPException(status_code=400, detail="Missing session_id")
    try:
        result = await get_escalation().run_contextual(db, payload.session_id)
    except store.SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except CompletionError as e:
        raise HTTPException(status_code=502, detail=f"Escalation check failed: {e}")
    return result.model_dump()


# =====================================================================
# Q&A for observers
# =====================================================================
@app.post("/contact-ai-helper")
async def contact_ai_helper(payload: QuestionRequest, db: Session = Depends(get_db)):
    try:
        answer = await answer_contact_question(db, completion, payload.session_id, payload.question)
    except store.SessionNotFound:
        raise HTTPException(status_code=404, detail="Session or messages not found")
    except CompletionError as e:
        raise HTTPException(status_code=502, detail=f"Answer generation failed: {e}")
    return {"answer": answer}
