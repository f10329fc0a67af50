"""Background monitor for intents that never completed"""

import logging
from datetime import timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from issue_relay.models.base import SessionLocal
from issue_relay.models import IntentStatus
from issue_relay.services.mapping_store import MappingStore

logger = logging.getLogger(__name__)

JOB_ID = "stale_intent_report"


class IntentMonitor:
    """Periodically report intents stuck in pending/applied.

    An applied intent means the counterpart was mutated but the mapping was
    never persisted; those need manual reconciliation.
    """

    def __init__(self, session_factory=SessionLocal, interval_minutes: int = 10, stale_after_minutes: int = 15):
        self.scheduler = BackgroundScheduler()
        self.session_factory = session_factory
        self.interval_minutes = interval_minutes
        self.stale_after = timedelta(minutes=stale_after_minutes)

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            func=self.report_stale_intents,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Intent monitor started (every {self.interval_minutes} minutes)")

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Intent monitor stopped")

    def report_stale_intents(self) -> int:
        """Log every stale intent; returns how many were found."""
        db = self.session_factory()
        try:
            stale = MappingStore(db).list_stale_intents(self.stale_after)
            for intent in stale:
                if intent.status == IntentStatus.APPLIED:
                    logger.error(
                        f"Intent {intent.id} ({intent.event_kind} {intent.entity_key}) was applied "
                        f"remotely ({intent.remote_ref}) but never persisted: {intent.error or 'no error recorded'}"
                    )
                else:
                    logger.warning(
                        f"Intent {intent.id} ({intent.event_kind} {intent.entity_key}) still pending "
                        f"since {intent.created_at}"
                    )
            return len(stale)
        except Exception as e:
            logger.error(f"Stale intent report failed: {e}")
            return 0
        finally:
            db.close()
