"""Chat bridge and live view: the text side of a session.

Nothing here talks to the call. The victim's chat and any number of live-view
observers read and append rows; the call script picks new victim messages up
on its next wait-poll.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

import store
from database import SOSMessage, SOSSession, SessionLocal, get_db
from models import TERMINAL_CALL_STATUSES, AIGuideToggle, ChatMessageIn, Sender, SourceType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


def message_out(m: SOSMessage) -> dict:
    return {
        "id": m.id,
        "session_id": m.session_id,
        "sender": m.sender.value,
        "source_type": m.source_type.value,
        "message": m.message,
        "sent_to_responder": m.sent_to_responder,
        "created_at": m.created_at.isoformat() if m.created_at else None,
        # Victim-typed text is what the call will read out
        "will_speak": m.sender == Sender.USER and m.source_type == SourceType.USER,
    }


def session_out(s: SOSSession) -> dict:
    return {
        "session_id": s.session_id,
        "situation": s.situation,
        "location": s.location,
        "location_lat": s.location_lat,
        "location_long": s.location_long,
        "number_of_threats": s.number_of_threats,
        "call_status": s.call_status.value,
        "turn_state": s.turn_state.value,
        "responder_processing_status": s.responder_processing_status.value,
        "ai_guide_enabled": s.ai_guide_enabled,
        "created_at": s.created_at.isoformat() if s.created_at else None,
    }


def _require(db: Session, session_id: str) -> SOSSession:
    try:
        return store.require_session(db, session_id)
    except store.SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")


@router.get("/{session_id}")
def get_session_status(session_id: str, db: Session = Depends(get_db)):
    return session_out(_require(db, session_id))


@router.get("/{session_id}/messages")
def get_messages(session_id: str, after_id: Optional[int] = None, db: Session = Depends(get_db)):
    _require(db, session_id)
    return [message_out(m) for m in store.list_messages(db, session_id, after_id=after_id)]


@router.post("/{session_id}/messages", status_code=201)
def post_message(session_id: str, payload: ChatMessageIn, db: Session = Depends(get_db)):
    """Victim-typed reply; queued for the call's next wait-poll."""
    _require(db, session_id)
    text = payload.message.strip()
    if not text:
        raise HTTPException(status_code=400, detail="Message is empty")
    msg = store.add_message(db, session_id, Sender.USER, SourceType.USER, text, sent_to_responder=False)
    logger.info("Victim message %s queued for session %s", msg.id, session_id)
    return message_out(msg)


@router.patch("/{session_id}/ai-guide")
def toggle_ai_guide(session_id: str, payload: AIGuideToggle, db: Session = Depends(get_db)):
    _require(db, session_id)
    store.set_ai_guide(db, session_id, payload.enabled)
    return {"session_id": session_id, "ai_guide_enabled": payload.enabled}


def _sse(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@router.get("/{session_id}/stream")
async def stream_session(session_id: str, request: Request, after_id: int = 0, db: Session = Depends(get_db)):
    """Server-sent events until the call ends.

    ``message`` carries each new row once, ``message_update`` re-sends a row
    whose ``sent_to_responder`` flag flipped after it was first emitted, and
    ``status`` fires whenever the session status fields change.
    """
    _require(db, session_id)
    poll_seconds = request.app.state.settings.feed_poll_seconds

    async def events():
        last_id = after_id
        last_status = None
        unsent: set[int] = set()
        while not await request.is_disconnected():
            poll_db = SessionLocal()
            try:
                session = store.get_session(poll_db, session_id)
                if session is None:
                    break
                updated = store.sent_messages_among(poll_db, unsent)
                for m in updated:
                    unsent.discard(m.id)
                    yield _sse("message_update", message_out(m))
                rows = store.list_messages(poll_db, session_id, after_id=last_id)
                for m in rows:
                    last_id = max(last_id, m.id)
                    if not m.sent_to_responder:
                        unsent.add(m.id)
                    yield _sse("message", message_out(m))
                status = session_out(session)
                key = (status["call_status"], status["responder_processing_status"], status["ai_guide_enabled"])
                if key != last_status:
                    last_status = key
                    yield _sse("status", status)
                finished = session.call_status in TERMINAL_CALL_STATUSES and not rows and not updated
            finally:
                poll_db.close()
            if finished:
                break
            await asyncio.sleep(poll_seconds)

    return StreamingResponse(events(), media_type="text/event-stream")
