"""Voice-call state machine for an SOS session.

Twilio drives the call through a chain of stateless webhooks. Each webhook is
handled in two steps:

1. A pure transition function takes a ``SessionView`` snapshot plus the
   event (recording received, transcript ready, reply decided, poll, status
   change, hang-up) and returns a ``Transition``: the next ``TurnState`` and a
   list of effects as data.
2. ``CallOrchestrator`` executes the store/telephony effects and renders the
   speech effects as TwiML for Twilio.

States::

    CREATED -> RINGING -> { SPEAKING -> RECORDING -> TRANSCRIBING
                            -> REPLY_DECISION -> SPEAKING | WAIT_FOR_USER }*
            -> COMPLETED | FAILED

Waiting for the victim is never a local loop: the wait branch answers with a
``<Redirect>`` back to ``/sos/check-response`` and Twilio keeps polling.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel
from sqlalchemy.orm import Session

import store
from completion import CompletionClient, CompletionError
from config import Settings
from database import SOSSession
from models import (
    TERMINAL_CALL_STATUSES,
    Answered,
    CallStatus,
    EmitEscalation,
    Hangup,
    InsufficientContext,
    MarkSent,
    OutboxKind,
    Pause,
    PersistMessage,
    ProcessingStatus,
    Record,
    RedirectToPoll,
    SOSRequest,
    Sender,
    SetCallStatus,
    SetProcessingStatus,
    SourceType,
    Speak,
    TerminateCall,
    Transition,
    TurnState,
    normalize_call_status,
)
from telephony import TelephonyError, TwilioTelephony
from transcriber import TranscriptionError, Transcriber

logger = logging.getLogger(__name__)

NOT_ACTIVE_NOTICE = "Call is not active. Cannot process recording."
HOLD_NOTICE = "Waiting for user input."
NO_RESPONSE_NOTICE = "No response yet. Please wait."
TURN_FAILED_NOTICE = "We could not process that. Waiting for user input."
CALL_ENDED_NOTICE = "This emergency call has ended."
TIME_LIMIT_NOTICE = "The maximum call time has been reached. Ending this call now."
MISSING_SESSION_NOTICE = "Missing session ID."
UNKNOWN_SESSION_NOTICE = "This emergency session could not be found."
HANGUP_MESSAGE = "Emergency call ended by user"
FALLBACK_SUMMARY = "This is an emergency. Please send help."


class SessionView(BaseModel):
    """Snapshot of the session row fields the transitions depend on."""
    session_id: str
    call_sid: Optional[str] = None
    call_status: CallStatus
    turn_state: TurnState
    ai_guide_enabled: bool = True
    final_sms_sent: bool = False
    has_contacts: bool = False
    age_seconds: float = 0.0

    @classmethod
    def from_row(cls, row: SOSSession, now: Optional[datetime] = None) -> "SessionView":
        now = now or datetime.now(timezone.utc)
        created = row.created_at or now
        if created.tzinfo is None:
            # SQLite drops tzinfo; rows are always written in UTC
            created = created.replace(tzinfo=timezone.utc)
        return cls(
            session_id=row.session_id,
            call_sid=row.call_sid,
            call_status=row.call_status,
            turn_state=row.turn_state,
            ai_guide_enabled=bool(row.ai_guide_enabled),
            final_sms_sent=bool(row.final_sms_sent),
            has_contacts=bool((row.emergency_contacts or "").strip()),
            age_seconds=(now - created).total_seconds(),
        )


class PendingMessage(BaseModel):
    id: int
    text: str


# ---------------------------------------------------------------------------
# Pure transitions
# ---------------------------------------------------------------------------
def refuse(notice: str, reset_processing: bool = False) -> Transition:
    effects: list = [SetProcessingStatus(status=ProcessingStatus.IDLE)] if reset_processing else []
    effects += [Speak(text=notice), Hangup()]
    return Transition(accepted=False, effects=effects)


def wait_branch(prefix: Optional[list] = None, notice: str = HOLD_NOTICE) -> Transition:
    """Hand the turn to the victim: hold notice, pause, then Twilio re-polls."""
    return Transition(
        state=TurnState.WAIT_FOR_USER,
        effects=list(prefix or [])
        + [
            SetProcessingStatus(status=ProcessingStatus.IDLE),
            Speak(text=notice),
            Pause(),
            RedirectToPoll(),
        ],
    )


def on_script_requested(view: Optional[SessionView], summary: str) -> Transition:
    if view is None:
        return refuse(UNKNOWN_SESSION_NOTICE)
    if view.call_status in TERMINAL_CALL_STATUSES:
        return refuse(CALL_ENDED_NOTICE)
    return Transition(state=TurnState.RECORDING, effects=[Speak(text=summary), Record()])


def on_recording(view: Optional[SessionView], reported_status: Optional[CallStatus]) -> Transition:
    """Gate a finished recording: audio is only processed while the call is live."""
    if view is None:
        return refuse(NOT_ACTIVE_NOTICE)
    if view.call_status != CallStatus.IN_PROGRESS or reported_status == CallStatus.COMPLETED:
        return refuse(NOT_ACTIVE_NOTICE, reset_processing=True)
    return Transition(
        state=TurnState.TRANSCRIBING,
        effects=[SetProcessingStatus(status=ProcessingStatus.PROCESSING_AUDIO)],
    )


def on_transcript(view: SessionView, transcript: str) -> Transition:
    # Empty transcripts are kept: "no speech" is still an observation
    persist = PersistMessage(sender=Sender.RESPONDER, source_type=SourceType.RESPONDER, text=transcript)
    if not view.ai_guide_enabled:
        return wait_branch([persist])
    return Transition(
        state=TurnState.REPLY_DECISION,
        effects=[persist, SetProcessingStatus(status=ProcessingStatus.GENERATING_RESPONSE)],
    )


def on_reply(view: SessionView, reply: Union[Answered, InsufficientContext]) -> Transition:
    if not view.ai_guide_enabled or not isinstance(reply, Answered):
        return wait_branch()
    return Transition(
        state=TurnState.RECORDING,
        effects=[
            PersistMessage(sender=Sender.USER, source_type=SourceType.AI, text=reply.text, spoken=True),
            SetProcessingStatus(status=ProcessingStatus.IDLE),
            Speak(text=reply.text),
            Record(),
        ],
    )


def on_turn_failure() -> Transition:
    """Transcription or completion failed: say so and fall back to waiting."""
    return wait_branch(notice=TURN_FAILED_NOTICE)


def on_poll(view: Optional[SessionView], pending: Optional[PendingMessage], max_call_seconds: int) -> Transition:
    if view is None:
        return refuse(UNKNOWN_SESSION_NOTICE)
    if view.call_status in TERMINAL_CALL_STATUSES:
        return refuse(CALL_ENDED_NOTICE)
    if view.age_seconds > max_call_seconds:
        return refuse(TIME_LIMIT_NOTICE, reset_processing=True)

    if pending is None:
        return Transition(
            state=TurnState.WAIT_FOR_USER,
            effects=[Speak(text=NO_RESPONSE_NOTICE), Pause(), RedirectToPoll()],
        )

    effects: list = [MarkSent(message_id=pending.id)]
    if view.has_contacts and not view.final_sms_sent:
        effects.append(EmitEscalation(escalation=OutboxKind.CONTEXTUAL))
    effects += [Speak(text=pending.text), Record()]
    return Transition(state=TurnState.RECORDING, effects=effects)


def on_status(status: CallStatus) -> Transition:
    if status == CallStatus.COMPLETED:
        state = TurnState.COMPLETED
    elif status == CallStatus.FAILED:
        state = TurnState.FAILED
    elif status in (CallStatus.QUEUED, CallStatus.RINGING):
        state = TurnState.RINGING
    else:
        # in-progress: the script callbacks own the turn sub-state
        state = None
    return Transition(state=state, effects=[SetCallStatus(status=status)])


class HangupRejected(Exception):
    """The session has no call to hang up."""


def on_hangup(view: SessionView) -> Transition:
    if not view.call_sid:
        raise HangupRejected("No active call found for this session")
    if view.call_status in TERMINAL_CALL_STATUSES:
        return Transition(accepted=False)
    return Transition(
        state=TurnState.COMPLETED,
        effects=[
            TerminateCall(call_sid=view.call_sid),
            SetCallStatus(status=CallStatus.COMPLETED),
            SetProcessingStatus(status=ProcessingStatus.IDLE),
            PersistMessage(sender=Sender.SYSTEM, source_type=SourceType.SYSTEM, text=HANGUP_MESSAGE),
        ],
    )


# ---------------------------------------------------------------------------
# Effect execution
# ---------------------------------------------------------------------------
class CallPlacementFailed(Exception):
    pass


class _ClaimLost(Exception):
    """Another poll already spoke the pending message."""


class CallOrchestrator:
    def __init__(
        self,
        settings: Settings,
        telephony: TwilioTelephony,
        transcriber: Transcriber,
        completion: CompletionClient,
    ):
        self.settings = settings
        self.telephony = telephony
        self.transcriber = transcriber
        self.completion = completion
        # Outbox ids recorded while handling the current request
        self.queued_events: list[int] = []

    def view(self, db: Session, session_id: str) -> Optional[SessionView]:
        row = store.get_session(db, session_id) if session_id else None
        return SessionView.from_row(row) if row is not None else None

    def apply(self, db: Session, session_id: str, transition: Transition) -> None:
        for effect in transition.effects:
            if isinstance(effect, SetProcessingStatus):
                store.set_processing_status(db, session_id, effect.status)
            elif isinstance(effect, SetCallStatus):
                store.advance_session_status(db, session_id, effect.status)
            elif isinstance(effect, PersistMessage):
                msg = store.add_message(db, session_id, effect.sender, effect.source_type, effect.text)
                if effect.spoken:
                    store.mark_message_sent(db, msg.id)
            elif isinstance(effect, MarkSent):
                if not store.mark_message_sent(db, effect.message_id):
                    raise _ClaimLost(effect.message_id)
            elif isinstance(effect, EmitEscalation):
                event = store.enqueue_event(db, session_id, effect.escalation)
                self.queued_events.append(event.id)
            elif isinstance(effect, TerminateCall):
                self.telephony.hangup(effect.call_sid)
        if transition.state is not None:
            store.set_turn_state(db, session_id, transition.state)

    def render(self, session_id: str, transition: Transition) -> str:
        return self.telephony.render(session_id, transition.speech())

    # -----------------------------------------------------------------------
    # 1. SOS submission
    # -----------------------------------------------------------------------
    async def start_session(self, db: Session, payload: SOSRequest) -> bool:
        """Create the session and dial out. Returns False for a duplicate submission.

        A resubmission for a session whose call was never placed dials again
        with the stored summary instead of being treated as a duplicate.
        """
        session_id = payload.session_id
        retry = False
        if store.create_session(db, payload):
            summary = await self.completion.summarize_incident(
                payload.situation, payload.location, payload.number_of_threat
            )
            # Both are delivered by the opening script, not queued for the poll
            store.add_message(db, session_id, Sender.USER, SourceType.USER, payload.situation, sent_to_responder=True)
            store.add_message(db, session_id, Sender.USER, SourceType.AI, summary, sent_to_responder=True)
        elif store.claim_placement_retry(db, session_id):
            retry = True
            summary = store.latest_summary(db, session_id) or FALLBACK_SUMMARY
            logger.info("Retrying call placement for session %s", session_id)
        else:
            return False

        try:
            call_sid = self.telephony.place_call(payload.call_number, session_id, summary)
        except TelephonyError:
            logger.exception("Failed to place outbound call for session %s", session_id)
            store.set_call_failed(db, session_id)
            # Contacts already heard about the failure on the first attempt
            if not retry:
                self._queue_alert(db, session_id, OutboxKind.PLACEMENT_FAILED)
            raise CallPlacementFailed(session_id)

        store.set_call_placed(db, session_id, call_sid)
        self._queue_alert(db, session_id, OutboxKind.INITIAL)
        return True

    def _queue_alert(self, db: Session, session_id: str, kind: OutboxKind) -> None:
        session = store.get_session(db, session_id)
        if session is None or not (session.emergency_contacts or "").strip():
            return
        event = store.enqueue_event(db, session_id, kind)
        self.queued_events.append(event.id)

    # -----------------------------------------------------------------------
    # 2. Voice script entry
    # -----------------------------------------------------------------------
    def voice_script(self, db: Session, session_id: str, msg: Optional[str]) -> str:
        summary = msg or store.latest_summary(db, session_id) or FALLBACK_SUMMARY
        view = self.view(db, session_id)
        transition = on_script_requested(view, summary)
        if view is not None:
            self.apply(db, session_id, transition)
        return self.render(session_id, transition)

    # -----------------------------------------------------------------------
    # 3 + 4. Recording handoff and reply decision
    # -----------------------------------------------------------------------
    async def handle_recording(
        self,
        db: Session,
        session_id: str,
        recording_url: Optional[str],
        reported_status: Optional[str],
    ) -> str:
        view = self.view(db, session_id)
        transition = on_recording(view, normalize_call_status(reported_status))
        if view is not None:
            self.apply(db, session_id, transition)
        if not transition.accepted:
            logger.info("Recording refused for session %s (status=%s)", session_id, reported_status)
            return self.render(session_id, transition)

        try:
            if not recording_url:
                raise TranscriptionError("Recording callback without RecordingUrl")
            transcript = await self.transcriber.transcribe_recording(recording_url)
        except TranscriptionError:
            logger.exception("Transcription failed for session %s", session_id)
            transition = on_turn_failure()
            self.apply(db, session_id, transition)
            return self.render(session_id, transition)

        transition = on_transcript(view, transcript)
        self.apply(db, session_id, transition)
        if transition.state != TurnState.REPLY_DECISION:
            return self.render(session_id, transition)

        context = store.user_message_texts(db, session_id)
        try:
            reply = await self.completion.answer_as_victim(transcript, context)
        except CompletionError:
            logger.exception("Impersonated reply failed for session %s", session_id)
            transition = on_turn_failure()
        else:
            transition = on_reply(view, reply)
        self.apply(db, session_id, transition)
        return self.render(session_id, transition)

    # -----------------------------------------------------------------------
    # 5 + 6. Wait-poll
    # -----------------------------------------------------------------------
    def check_response(self, db: Session, session_id: str) -> str:
        view = self.view(db, session_id)
        row = store.next_unsent_user_message(db, session_id) if view is not None else None
        pending = PendingMessage(id=row.id, text=row.message) if row is not None else None

        transition = on_poll(view, pending, self.settings.max_call_seconds)
        if view is None:
            return self.render(session_id, transition)
        try:
            self.apply(db, session_id, transition)
        except _ClaimLost:
            logger.info("Message %s already spoken by a concurrent poll", pending.id if pending else None)
            transition = on_poll(view, None, self.settings.max_call_seconds)
            self.apply(db, session_id, transition)
        return self.render(session_id, transition)

    # -----------------------------------------------------------------------
    # 7. Status tracking
    # -----------------------------------------------------------------------
    def call_status(self, db: Session, call_sid: str, raw_status: str) -> bool:
        status = normalize_call_status(raw_status)
        if status is None:
            logger.warning("Ignoring unknown call status %r for %s", raw_status, call_sid)
            return False
        transition = on_status(status)
        changed = store.update_call_status(db, call_sid, status, transition.state)
        logger.info("Call %s status=%s applied=%s", call_sid, status.value, changed)
        return changed

    # -----------------------------------------------------------------------
    # 8. Termination
    # -----------------------------------------------------------------------
    def hangup(self, db: Session, session_id: str) -> dict:
        view = SessionView.from_row(store.require_session(db, session_id))
        transition = on_hangup(view)
        if not transition.accepted:
            return {
                "success": True,
                "message": f"Call was already {view.call_status.value}",
                "callStatus": view.call_status.value,
            }
        self.apply(db, session_id, transition)
        return {"success": True, "message": "Call hung up successfully", "callStatus": CallStatus.COMPLETED.value}
