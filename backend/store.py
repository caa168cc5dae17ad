"""Typed access to session, message and outbox rows.

Both the voice side (Twilio callbacks) and the text side (chat + live view)
go through these helpers; the database is the only channel between them.
Fields with at-most-once semantics (``sent_to_responder`` and
``final_sms_sent``) are only ever flipped with a conditional UPDATE whose
rowcount tells the caller whether it won.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import OutboxEvent, SOSMessage, SOSSession
from models import (
    CALL_STATUS_RANK,
    CallStatus,
    OutboxKind,
    OutboxStatus,
    ProcessingStatus,
    SOSRequest,
    Sender,
    SourceType,
    TurnState,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
class SessionNotFound(LookupError):
    pass


def get_session(db: Session, session_id: str) -> Optional[SOSSession]:
    return db.get(SOSSession, session_id)


def require_session(db: Session, session_id: str) -> SOSSession:
    session = get_session(db, session_id) if session_id else None
    if session is None:
        raise SessionNotFound(session_id)
    return session


def create_session(db: Session, payload: SOSRequest) -> bool:
    """Insert the session row. Returns False if the id already exists."""
    if get_session(db, payload.session_id) is not None:
        return False
    db.add(
        SOSSession(
            session_id=payload.session_id,
            situation=payload.situation,
            location=payload.location,
            number_of_threats=payload.number_of_threat,
            location_lat=payload.location_lat,
            location_long=payload.location_long,
            call_number=payload.call_number,
            emergency_contacts=payload.joined_contacts(),
            call_status=CallStatus.QUEUED,
            turn_state=TurnState.CREATED,
            responder_processing_status=ProcessingStatus.IDLE,
            ai_guide_enabled=True,
            final_sms_sent=False,
        )
    )
    try:
        db.commit()
    except IntegrityError:
        # Concurrent submission for the same id won the insert
        db.rollback()
        logger.info("Duplicate SOS submission ignored: session=%s", payload.session_id)
        return False
    return True


def set_call_placed(db: Session, session_id: str, call_sid: str) -> None:
    db.execute(
        update(SOSSession)
        .where(SOSSession.session_id == session_id)
        .values(call_sid=call_sid, turn_state=TurnState.RINGING)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def set_call_failed(db: Session, session_id: str) -> None:
    db.execute(
        update(SOSSession)
        .where(SOSSession.session_id == session_id)
        .values(call_status=CallStatus.FAILED, turn_state=TurnState.FAILED)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def update_call_status(
    db: Session,
    call_sid: str,
    status: CallStatus,
    turn_state: Optional[TurnState] = None,
) -> bool:
    """Apply a provider status report keyed by call sid.

    Statuses only move forward (queued < ringing < in-progress < terminal), so
    a late or replayed report never regresses the row. Returns True if a row
    changed.
    """
    return _advance_call_status(db, SOSSession.call_sid == call_sid, status, turn_state)


def _advance_call_status(db: Session, match, status: CallStatus, turn_state: Optional[TurnState]) -> bool:
    rank = CALL_STATUS_RANK[status]
    allowed_from = [s for s, r in CALL_STATUS_RANK.items() if r < rank] + [status]
    values: dict = {"call_status": status}
    if turn_state is not None:
        values["turn_state"] = turn_state
    result = db.execute(
        update(SOSSession)
        .where(match, SOSSession.call_status.in_(allowed_from))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


def advance_session_status(
    db: Session,
    session_id: str,
    status: CallStatus,
    turn_state: Optional[TurnState] = None,
) -> bool:
    """Same forward-only rule as update_call_status, keyed by session id."""
    return _advance_call_status(db, SOSSession.session_id == session_id, status, turn_state)


def claim_placement_retry(db: Session, session_id: str) -> bool:
    """Reopen a session whose call was never placed so it can be dialed again.

    Only a ``failed`` row without a call sid qualifies; concurrent retries race
    on the same conditional UPDATE and only one of them dials.
    """
    result = db.execute(
        update(SOSSession)
        .where(
            SOSSession.session_id == session_id,
            SOSSession.call_sid.is_(None),
            SOSSession.call_status == CallStatus.FAILED,
        )
        .values(call_status=CallStatus.QUEUED, turn_state=TurnState.CREATED)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def set_turn_state(db: Session, session_id: str, state: TurnState) -> None:
    # Terminal states are owned by status callbacks and hang-up
    db.execute(
        update(SOSSession)
        .where(
            SOSSession.session_id == session_id,
            SOSSession.turn_state.notin_([TurnState.COMPLETED, TurnState.FAILED]),
        )
        .values(turn_state=state)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def set_processing_status(db: Session, session_id: str, status: ProcessingStatus) -> None:
    db.execute(
        update(SOSSession)
        .where(SOSSession.session_id == session_id)
        .values(responder_processing_status=status)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def set_ai_guide(db: Session, session_id: str, enabled: bool) -> bool:
    result = db.execute(
        update(SOSSession)
        .where(SOSSession.session_id == session_id)
        .values(ai_guide_enabled=enabled)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount > 0


def claim_final_sms(db: Session, session_id: str) -> bool:
    """Set the contextual-escalation latch. Only one caller ever gets True."""
    result = db.execute(
        update(SOSSession)
        .where(SOSSession.session_id == session_id, SOSSession.final_sms_sent.is_(False))
        .values(final_sms_sent=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
def add_message(
    db: Session,
    session_id: str,
    sender: Sender,
    source_type: SourceType,
    text: str,
    sent_to_responder: bool = False,
) -> SOSMessage:
    msg = SOSMessage(
        session_id=session_id,
        sender=sender,
        source_type=source_type,
        message=text,
        sent_to_responder=sent_to_responder,
        created_at=_utcnow(),
    )
    db.add(msg)
    db.commit()
    db.refresh(msg)
    return msg


def list_messages(db: Session, session_id: str, after_id: Optional[int] = None) -> list[SOSMessage]:
    """Ordered transcript; with ``after_id`` only rows inserted after that cursor."""
    stmt = select(SOSMessage).where(SOSMessage.session_id == session_id)
    if after_id is not None:
        stmt = stmt.where(SOSMessage.id > after_id)
    stmt = stmt.order_by(SOSMessage.created_at.asc(), SOSMessage.id.asc())
    return list(db.execute(stmt).scalars().all())


def sent_messages_among(db: Session, message_ids) -> list[SOSMessage]:
    """Rows from ``message_ids`` whose sent flag has since flipped to true."""
    if not message_ids:
        return []
    stmt = (
        select(SOSMessage)
        .where(SOSMessage.id.in_(list(message_ids)), SOSMessage.sent_to_responder.is_(True))
        .order_by(SOSMessage.id.asc())
    )
    return list(db.execute(stmt).scalars().all())


def user_message_texts(db: Session, session_id: str) -> list[str]:
    """Everything said in the victim's voice: typed messages and accepted AI answers."""
    stmt = (
        select(SOSMessage.message)
        .where(SOSMessage.session_id == session_id, SOSMessage.sender == Sender.USER)
        .order_by(SOSMessage.created_at.asc(), SOSMessage.id.asc())
    )
    return list(db.execute(stmt).scalars().all())


def latest_summary(db: Session, session_id: str) -> Optional[str]:
    stmt = (
        select(SOSMessage.message)
        .where(
            SOSMessage.session_id == session_id,
            SOSMessage.sender == Sender.USER,
            SOSMessage.source_type == SourceType.AI,
        )
        .order_by(SOSMessage.created_at.asc(), SOSMessage.id.asc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def next_unsent_user_message(db: Session, session_id: str) -> Optional[SOSMessage]:
    """Oldest victim-typed message not yet spoken into the call."""
    stmt = (
        select(SOSMessage)
        .where(
            SOSMessage.session_id == session_id,
            SOSMessage.source_type == SourceType.USER,
            SOSMessage.sent_to_responder.is_(False),
        )
        .order_by(SOSMessage.created_at.asc(), SOSMessage.id.asc())
        .limit(1)
    )
    return db.execute(stmt).scalars().first()


def mark_message_sent(db: Session, message_id: int) -> bool:
    """Flip sent_to_responder false -> true. Returns False if already flipped."""
    result = db.execute(
        update(SOSMessage)
        .where(SOSMessage.id == message_id, SOSMessage.sent_to_responder.is_(False))
        .values(sent_to_responder=True)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------
def enqueue_event(db: Session, session_id: str, kind: OutboxKind) -> OutboxEvent:
    event = OutboxEvent(session_id=session_id, kind=kind, status=OutboxStatus.PENDING, attempts=0)
    db.add(event)
    db.commit()
    db.refresh(event)
    logger.info("Outbox event queued: id=%s kind=%s session=%s", event.id, kind.value, session_id)
    return event


def pending_events(db: Session, limit: int = 50) -> list[OutboxEvent]:
    stmt = (
        select(OutboxEvent)
        .where(OutboxEvent.status == OutboxStatus.PENDING)
        .order_by(OutboxEvent.id.asc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars().all())


def claim_event(db: Session, event_id: int, seen_attempts: int) -> bool:
    """Take one delivery attempt for a pending event; concurrent dispatchers lose."""
    result = db.execute(
        update(OutboxEvent)
        .where(
            OutboxEvent.id == event_id,
            OutboxEvent.status == OutboxStatus.PENDING,
            OutboxEvent.attempts == seen_attempts,
        )
        .values(status=OutboxStatus.SENDING, attempts=seen_attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def finish_event(db: Session, event_id: int, error: Optional[str], max_attempts: int) -> None:
    event = db.get(OutboxEvent, event_id)
    if event is None:
        return
    if error is None:
        event.status = OutboxStatus.DELIVERED
        event.delivered_at = _utcnow()
        event.last_error = None
    else:
        event.last_error = error[:2000]
        event.status = OutboxStatus.FAILED if event.attempts >= max_attempts else OutboxStatus.PENDING
    db.commit()
