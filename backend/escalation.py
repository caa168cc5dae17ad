"""Two-stage SMS escalation to the victim's personal contacts.

* **Immediate**: sent right after the call is placed, a fixed template with the
  submitted facts and a link to the live chat. If the call could not be
  placed the contacts get a variant asking them to reach emergency services.
* **Contextual**: at most once per session, once the conversation contains a
  name, an emergency type and a specific location. The model is asked for a
  strict yes/no; anything other than an explicit, parseable "yes" means no SMS.

Both stages are no-ops for sessions without contacts. SMS failures are logged
by the notifier and never propagate.
"""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

import store
from completion import CompletionClient
from config import Settings
from models import StageResult, split_contacts
from notifier import SmsNotifier

logger = logging.getLogger(__name__)

INITIAL_TEMPLATE = (
    "🚨 Emergency Alert 🚨\n"
    "A user you know has triggered a silent SOS from their device. "
    "A voice call has been placed to emergency services. "
    "You'll be notified with more details shortly.\n\n"
    "Incident Details:\n"
    "Location: {location}\n"
    "Threats reported: {threats}\n"
    "Situation reported: {situation}\n\n"
    "See the Live Chat here - {link}"
)

PLACEMENT_FAILED_TEMPLATE = (
    "🚨 Emergency Alert 🚨\n"
    "A user you know has triggered a silent SOS from their device. "
    "We could NOT reach emergency services by phone. "
    "Please contact them on the user's behalf.\n\n"
    "Incident Details:\n"
    "Location: {location}\n"
    "Threats reported: {threats}\n"
    "Situation reported: {situation}\n\n"
    "See the Live Chat here - {link}"
)

CONTEXTUAL_TEMPLATE = "{summary}\n\nView live chat: {link}"


class EscalationEngine:
    def __init__(self, settings: Settings, completion: CompletionClient, notifier: SmsNotifier):
        self.settings = settings
        self.completion = completion
        self.notifier = notifier

    def run_initial(self, db: Session, session_id: str, call_failed: bool = False) -> StageResult:
        """Immediate alert; ``call_failed`` switches to the could-not-reach wording."""
        session = store.require_session(db, session_id)
        contacts = split_contacts(session.emergency_contacts)
        if not contacts:
            return StageResult(skipped=True, reason="no_contacts")

        template = PLACEMENT_FAILED_TEMPLATE if call_failed else INITIAL_TEMPLATE
        body = template.format(
            location=session.location or "Unknown",
            threats=session.number_of_threats,
            situation=session.situation or "N/A",
            link=self.settings.live_view_link(session_id),
        )
        sent_to = self.notifier.broadcast(contacts, body)
        logger.info("Initial alert for session %s sent to %d/%d contacts", session_id, len(sent_to), len(contacts))
        return StageResult(sent_to=sent_to)

    async def run_contextual(self, db: Session, session_id: str) -> StageResult:
        """Judge the transcript and, on a clear yes, send the summary SMS once.

        CompletionError propagates so the caller can retry later.
        """
        session = store.require_session(db, session_id)
        contacts = split_contacts(session.emergency_contacts)
        if not contacts:
            return StageResult(skipped=True, reason="no_contacts")
        if session.final_sms_sent:
            return StageResult(skipped=True, reason="already_sent")

        chat = [m.message for m in store.list_messages(db, session_id)]
        if not chat:
            return StageResult(skipped=True, reason="no_messages")

        verdict = await self.completion.judge_escalation(chat, session.location)
        if verdict is None:
            logger.warning("Escalation verdict unparseable for session %s, skipping", session_id)
            return StageResult(skipped=True, reason="unparseable_verdict")
        if not verdict.valid or not verdict.summary:
            return StageResult(skipped=True, reason="insufficient_information", summary=verdict.summary or None)

        if not store.claim_final_sms(db, session_id):
            return StageResult(skipped=True, reason="already_sent", summary=verdict.summary)

        body = CONTEXTUAL_TEMPLATE.format(summary=verdict.summary, link=self.settings.live_view_link(session_id))
        sent_to = self.notifier.broadcast(contacts, body)
        logger.info("Contextual alert for session %s sent to %d/%d contacts", session_id, len(sent_to), len(contacts))
        return StageResult(summary=verdict.summary, sent_to=sent_to)
