"""Database models and session management via SQLAlchemy."""

from __future__ import annotations

import os
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from models import (
    CallStatus,
    OutboxKind,
    OutboxStatus,
    ProcessingStatus,
    Sender,
    SourceType,
    TurnState,
)

DB_PATH = os.getenv("WHISPRNET_DB_PATH", "whisprnet.db")
DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DB_PATH}")

# check_same_thread is SQLite-only; omit for PostgreSQL
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SOSSession(Base):
    """One emergency incident: the call linkage plus the facts the victim submitted."""

    __tablename__ = "sos_sessions"

    session_id = Column(String, primary_key=True)
    situation = Column(Text, nullable=False, default="")
    location = Column(Text, nullable=False, default="")
    number_of_threats = Column(Integer, nullable=False, default=0)
    location_lat = Column(Float, nullable=True)
    location_long = Column(Float, nullable=True)

    call_number = Column(String, nullable=False)
    emergency_contacts = Column(String, nullable=False, default="")  # "a;b"

    call_sid = Column(String, nullable=True, index=True)
    call_status = Column(Enum(CallStatus), nullable=False, default=CallStatus.QUEUED)
    turn_state = Column(Enum(TurnState), nullable=False, default=TurnState.CREATED)
    responder_processing_status = Column(
        Enum(ProcessingStatus), nullable=False, default=ProcessingStatus.IDLE
    )

    ai_guide_enabled = Column(Boolean, nullable=False, default=True)
    final_sms_sent = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class SOSMessage(Base):
    """Append-only timeline entry; only sent_to_responder ever changes."""

    __tablename__ = "sos_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("sos_sessions.session_id"), nullable=False, index=True)
    sender = Column(Enum(Sender), nullable=False)
    source_type = Column(Enum(SourceType), nullable=False)
    message = Column(Text, nullable=False, default="")
    sent_to_responder = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=_utcnow, index=True)


class OutboxEvent(Base):
    """Escalation work recorded during a callback and delivered by the dispatcher."""

    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String, ForeignKey("sos_sessions.session_id"), nullable=False, index=True)
    kind = Column(Enum(OutboxKind), nullable=False)
    status = Column(Enum(OutboxStatus), nullable=False, default=OutboxStatus.PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    delivered_at = Column(DateTime, nullable=True)


def init_db() -> None:
    """Create all tables if they don't exist."""
    Base.metadata.create_all(bind=engine)


def get_db():
    """FastAPI dependency: yield a database session and close it after the request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
