"""Pydantic models for request payloads, call state and adapter results."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Call state machine
# ---------------------------------------------------------------------------
class CallStatus(str, Enum):
    QUEUED = "queued"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_CALL_STATUSES = (CallStatus.COMPLETED, CallStatus.FAILED)

# Statuses only move forward; both terminal statuses share the last rank
CALL_STATUS_RANK = {
    CallStatus.QUEUED: 0,
    CallStatus.RINGING: 1,
    CallStatus.IN_PROGRESS: 2,
    CallStatus.COMPLETED: 3,
    CallStatus.FAILED: 3,
}

# Raw Twilio CallStatus values that do not map one-to-one onto CallStatus
_TWILIO_STATUS_ALIASES = {
    "initiated": CallStatus.QUEUED,
    "answered": CallStatus.IN_PROGRESS,
    "busy": CallStatus.FAILED,
    "no-answer": CallStatus.FAILED,
    "canceled": CallStatus.FAILED,
}


def normalize_call_status(raw: str | None) -> CallStatus | None:
    """Map a Twilio CallStatus string onto CallStatus, or None if unknown."""
    if not raw:
        return None
    value = raw.strip().lower()
    if value in _TWILIO_STATUS_ALIASES:
        return _TWILIO_STATUS_ALIASES[value]
    try:
        return CallStatus(value)
    except ValueError:
        return None


class TurnState(str, Enum):
    CREATED = "CREATED"
    RINGING = "RINGING"
    SPEAKING = "SPEAKING"
    RECORDING = "RECORDING"
    TRANSCRIBING = "TRANSCRIBING"
    REPLY_DECISION = "REPLY_DECISION"
    WAIT_FOR_USER = "WAIT_FOR_USER"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ProcessingStatus(str, Enum):
    IDLE = "idle"
    PROCESSING_AUDIO = "processing_audio"
    GENERATING_RESPONSE = "generating_response"


class Sender(str, Enum):
    USER = "user"
    RESPONDER = "responder"
    SYSTEM = "system"


class SourceType(str, Enum):
    USER = "user"
    AI = "ai"
    RESPONDER = "responder"
    SYSTEM = "system"


class OutboxKind(str, Enum):
    INITIAL = "initial"
    CONTEXTUAL = "contextual"
    PLACEMENT_FAILED = "placement_failed"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Inbound payloads
# ---------------------------------------------------------------------------
class SOSRequest(BaseModel):
    session_id: str
    situation: str = ""
    location: str = ""
    location_lat: Optional[float] = None
    location_long: Optional[float] = None
    number_of_threat: int = 0
    call_number: str
    emergency_contact_1: Optional[str] = None
    emergency_contact_2: Optional[str] = None

    @field_validator("number_of_threat", mode="before")
    @classmethod
    def _default_threats(cls, value):
        try:
            count = int(value)
        except (TypeError, ValueError):
            return 0
        return max(count, 0)

    def joined_contacts(self) -> str:
        return join_contacts(self.emergency_contact_1, self.emergency_contact_2)


def join_contacts(*contacts: str | None) -> str:
    """Semicolon-join the non-empty contact numbers, preserving order."""
    return ";".join(c.strip() for c in contacts if c and c.strip())


def split_contacts(raw: str | None) -> list[str]:
    if not raw:
        return []
    return [c.strip() for c in raw.replace(",", ";").split(";") if c.strip()]


class SessionIdRequest(BaseModel):
    session_id: Optional[str] = None


class QuestionRequest(BaseModel):
    session_id: str
    question: str


class ChatMessageIn(BaseModel):
    message: str


class AIGuideToggle(BaseModel):
    enabled: bool


# ---------------------------------------------------------------------------
# Completion adapter results
# ---------------------------------------------------------------------------
class Answered(BaseModel):
    kind: Literal["answered"] = "answered"
    text: str


class InsufficientContext(BaseModel):
    kind: Literal["insufficient_context"] = "insufficient_context"


class EscalationVerdict(BaseModel):
    valid: bool
    reason: str = ""
    summary: str = ""


class StageResult(BaseModel):
    """Outcome of one escalation stage run."""
    success: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    summary: Optional[str] = None
    sent_to: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Call script effects
#
# Transition functions in orchestrator.py return these as plain data; the
# service layer executes the store effects and renders the speech effects
# as TwiML.
# ---------------------------------------------------------------------------
class Speak(BaseModel):
    kind: Literal["speak"] = "speak"
    text: str


class Record(BaseModel):
    kind: Literal["record"] = "record"


class Pause(BaseModel):
    kind: Literal["pause"] = "pause"
    seconds: Optional[int] = None


class RedirectToPoll(BaseModel):
    kind: Literal["redirect_to_poll"] = "redirect_to_poll"


class Hangup(BaseModel):
    kind: Literal["hangup"] = "hangup"


class SetProcessingStatus(BaseModel):
    kind: Literal["set_processing_status"] = "set_processing_status"
    status: ProcessingStatus


class SetCallStatus(BaseModel):
    kind: Literal["set_call_status"] = "set_call_status"
    status: CallStatus


class PersistMessage(BaseModel):
    kind: Literal["persist_message"] = "persist_message"
    sender: Sender
    source_type: SourceType
    text: str
    # Spoken in this same response: inserted unsent, flipped once the TwiML is built
    spoken: bool = False


class MarkSent(BaseModel):
    kind: Literal["mark_sent"] = "mark_sent"
    message_id: int


class EmitEscalation(BaseModel):
    kind: Literal["emit_escalation"] = "emit_escalation"
    escalation: OutboxKind


class TerminateCall(BaseModel):
    kind: Literal["terminate_call"] = "terminate_call"
    call_sid: str


Effect = Annotated[
    Union[
        Speak,
        Record,
        Pause,
        RedirectToPoll,
        Hangup,
        SetProcessingStatus,
        SetCallStatus,
        PersistMessage,
        MarkSent,
        EmitEscalation,
        TerminateCall,
    ],
    Field(discriminator="kind"),
]

SPEECH_EFFECTS = (Speak, Record, Pause, RedirectToPoll, Hangup)


class Transition(BaseModel):
    """Result of one transition: the next turn state (None = unchanged) and its effects."""
    state: Optional[TurnState] = None
    effects: list[Effect] = Field(default_factory=list)
    # False when the callback was refused and nothing downstream should run
    accepted: bool = True

    def speech(self) -> list:
        return [e for e in self.effects if isinstance(e, SPEECH_EFFECTS)]
