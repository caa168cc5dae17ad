"""Outbox delivery for escalation events via APScheduler.

Call callbacks only record escalation work in ``outbox_events``; this module
delivers it, so a slow model call or SMS provider never delays the TwiML
response Twilio is waiting for. Each event gets up to
``outbox_max_attempts`` tries before it is parked as failed.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

import store
from config import Settings
from database import SessionLocal
from escalation import EscalationEngine
from models import OutboxKind

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


class OutboxDispatcher:
    def __init__(self, settings: Settings, engine: EscalationEngine):
        self.settings = settings
        self.engine = engine

    async def deliver(self, db, event) -> None:
        if event.kind == OutboxKind.INITIAL:
            result = self.engine.run_initial(db, event.session_id)
        elif event.kind == OutboxKind.PLACEMENT_FAILED:
            result = self.engine.run_initial(db, event.session_id, call_failed=True)
        else:
            result = await self.engine.run_contextual(db, event.session_id)
        logger.info(
            "Outbox event %s (%s) for session %s: skipped=%s reason=%s sent_to=%s",
            event.id, event.kind.value, event.session_id, result.skipped, result.reason, result.sent_to,
        )

    async def dispatch_pending(self) -> int:
        """Deliver every pending event once. Returns the number delivered."""
        db = SessionLocal()
        delivered = 0
        try:
            for event in store.pending_events(db):
                event_id, attempts = event.id, event.attempts
                if not store.claim_event(db, event_id, attempts):
                    continue
                try:
                    await self.deliver(db, event)
                except Exception as e:
                    logger.exception("Outbox event %s failed (attempt %d)", event_id, attempts + 1)
                    db.rollback()
                    store.finish_event(db, event_id, repr(e), self.settings.outbox_max_attempts)
                else:
                    store.finish_event(db, event_id, None, self.settings.outbox_max_attempts)
                    delivered += 1
        finally:
            db.close()
        return delivered


# ---------------------------------------------------------------------------
# Scheduler lifecycle
# ---------------------------------------------------------------------------
def start_scheduler(dispatcher: OutboxDispatcher) -> None:
    """Start the APScheduler with the periodic outbox job."""
    scheduler.add_job(
        dispatcher.dispatch_pending,
        "interval",
        seconds=dispatcher.settings.outbox_poll_seconds,
        id="whisprnet_outbox",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
        next_run_time=datetime.now(timezone.utc) + timedelta(seconds=1),
    )
    scheduler.start()
    logger.info("Scheduler started, outbox interval: %.1f seconds", dispatcher.settings.outbox_poll_seconds)


def stop_scheduler() -> None:
    """Shut down the scheduler gracefully."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
