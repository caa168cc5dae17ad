"""Question answering for people watching a session from the live view."""

from __future__ import annotations

from sqlalchemy.orm import Session

import store
from completion import CompletionClient


async def answer_contact_question(db: Session, completion: CompletionClient, session_id: str, question: str) -> str:
    """Answer from the victim's own messages only. Reads, never writes.

    Raises SessionNotFound when the session has no victim messages to draw on.
    """
    context = store.user_message_texts(db, session_id)
    if not context:
        raise store.SessionNotFound(session_id)
    return await completion.answer_question(session_id, question, context)
