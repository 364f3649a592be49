"""Daily deletion of appointments and bookkeeping rows past their retention window.
"""
import logging

from jobkeeper.config import RETENTION_CLEANUP
from jobkeeper.dispatch import CycleStats
from jobkeeper.jobs.base import JobBody
from jobkeeper.runner import RunContext
from jobkeeper.store import AppointmentStatus
from jobkeeper.utils import days

logger = logging.getLogger(__name__)

CANCELLED_RETENTION_DAYS = 90
COMPLETED_RETENTION_DAYS = 365
PROCESSED_MESSAGE_RETENTION_DAYS = 30
ABANDONED_EMAIL_RETENTION_DAYS = 30
CLEANUP_BATCH_SIZE = 100

FINISHED_STATUSES = (
    AppointmentStatus.CONFIRMED,
    AppointmentStatus.COMPLETED,
    AppointmentStatus.SESSION_HELD,
    AppointmentStatus.FEEDBACK_REQUESTED,
)


class RetentionCleanup(JobBody):
    name = RETENTION_CLEANUP

    def __init__(self, store, settings=None, clock=None, batch_size: int = CLEANUP_BATCH_SIZE):
        super().__init__(store, settings, clock)
        self.batch_size = batch_size

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        now = self.clock()
        c = self.store.appointment.c

        stats.bump('cancelled_deleted', self._delete_in_batches(
            ctx,
            c.status == AppointmentStatus.CANCELLED.value,
            c.updated_at < now - days(CANCELLED_RETENTION_DAYS)))
        stats.bump('completed_deleted', self._delete_in_batches(
            ctx,
            c.status.in_([s.value for s in FINISHED_STATUSES]),
            c.updated_at < now - days(COMPLETED_RETENTION_DAYS)))

        if not ctx.lease_valid:
            return
        stats.bump('processed_messages_deleted', self.store.purge_processed_messages(
            now - days(PROCESSED_MESSAGE_RETENTION_DAYS)))
        stats.bump('abandoned_emails_deleted', self.store.purge_abandoned_emails(
            now - days(ABANDONED_EMAIL_RETENTION_DAYS)))

    def _delete_in_batches(self, ctx: RunContext, *where) -> int:
        total = 0
        while ctx.lease_valid:
            deleted = self.store.delete_batch(*where, batch_size=self.batch_size)
            total += deleted
            if deleted < self.batch_size:
                break
        return total
