"""Hourly conversation health checks: stale flags, inactivity, stalls,
missed replies and auto-escalation.
"""
import logging

import sqlalchemy as sa

from jobkeeper.collaborators import InactivityHandler, LoggingNotifier, Notifier, ReplyChecker, no_replies
from jobkeeper.config import STALE_CHECK
from jobkeeper.dispatch import CycleStats
from jobkeeper.jobs.base import CompositeJob, JobBody
from jobkeeper.runner import RunContext
from jobkeeper.store import ACTIVE_STATUSES, AppointmentStatus
from jobkeeper.utils import hours

logger = logging.getLogger(__name__)

ACTIVE = [s.value for s in ACTIVE_STATUSES]
AUTO_ESCALATION_ACTOR = 'system-auto-escalation'
ESCALATION_MULTIPLIER = 3
ESCALATION_BATCH_SIZE = 50
STALL_BATCH_SIZE = 50
REPLY_RECOVERY_INACTIVE_HOURS = 1
REPLY_RECOVERY_BATCH_SIZE = 10


class StaleFlagCheck(JobBody):
    """Mark active appointments idle past the threshold as stale; unmark resumed ones.
    """
    name = 'stale-flags'

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        now = self.clock()
        threshold = now - hours(self.setting('stale.markStaleHours'))
        c = self.store.appointment.c

        marked = self.store.update_where(
            now, c.status.in_(ACTIVE), c.last_activity_at < threshold, c.is_stale.is_(False),
            is_stale=True)
        unmarked = self.store.update_where(
            now, c.status.in_(ACTIVE), c.last_activity_at >= threshold, c.is_stale.is_(True),
            is_stale=False)
        if marked:
            logger.info(f'{ctx.log_prefix} marked {marked} conversation(s) as stale')
        if unmarked:
            logger.info(f'{ctx.log_prefix} unmarked {unmarked} conversation(s) with resumed activity')
        stats.bump('marked_stale', marked)
        stats.bump('unmarked_stale', unmarked)


class InactivityCheck(JobBody):
    """Hand the inactivity threshold to the therapist-level handler.
    """
    name = 'inactivity'

    def __init__(self, store, settings=None, clock=None, handler: InactivityHandler = None):
        super().__init__(store, settings, clock)
        self.handler = handler

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        if self.handler is None:
            logger.debug(f'{ctx.log_prefix} no inactivity handler configured')
            stats.skipped += 1
            return
        threshold = self.setting('notifications.inactivityAlertHours')
        result = self.handler(threshold) or {}
        stats.bump('flagged', int(result.get('flagged', 0)))
        stats.bump('unfrozen', int(result.get('unfrozen', 0)))


class StallDetection(JobBody):
    """Flag conversations with activity but no tool progress; clear flags once progress resumes.

    Only the process whose conditional update changed the row sends the
    notification.
    """
    name = 'stall'

    def __init__(self, store, settings=None, clock=None, notifier: Notifier = None,
                 batch_size: int = STALL_BATCH_SIZE):
        super().__init__(store, settings, clock)
        self.notifier = notifier or LoggingNotifier()
        self.batch_size = batch_size

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        now = self.clock()
        threshold = now - hours(self.setting('notifications.stallDetectionHours'))
        c = self.store.appointment.c
        no_progress = sa.or_(c.last_tool_executed_at.is_(None), c.last_tool_executed_at < threshold)

        candidates = self.store.select(
            c.status.in_(ACTIVE),
            c.last_activity_at >= threshold,
            no_progress,
            c.conversation_stall_alert_at.is_(None),
            order_by=c.last_activity_at, limit=self.batch_size)

        for appointment in candidates:
            if not ctx.lease_valid:
                break
            flagged = self.store.update_where(
                now,
                c.id == appointment.id,
                c.status.in_(ACTIVE),
                c.conversation_stall_alert_at.is_(None),
                no_progress,
                conversation_stall_alert_at=now,
                conversation_stall_acknowledged=False)
            if not flagged:
                stats.lost += 1
                continue
            stats.bump('flagged')
            since = appointment.last_tool_executed_at or appointment.created_at or appointment.last_activity_at
            try:
                self.notifier.notify_stall(appointment, (now - since).total_seconds() / 3600)
            except Exception as e:
                logger.warning(f'{ctx.log_prefix} stall notification for {appointment.id} failed: {e}')
                stats.failed += 1

        cleared = self.store.update_where(
            now,
            c.status.in_(ACTIVE),
            c.last_tool_executed_at >= threshold,
            c.conversation_stall_alert_at.is_not(None),
            c.conversation_stall_acknowledged.is_(False),
            conversation_stall_alert_at=None)
        if cleared:
            logger.info(f'{ctx.log_prefix} cleared {cleared} stall alert(s) for progressing conversations')
        stats.bump('cleared', cleared)


class AutoEscalation(JobBody):
    """Hand long-stalled conversations to a human.
    """
    name = 'auto-escalation'

    def __init__(self, store, settings=None, clock=None, notifier: Notifier = None,
                 batch_size: int = ESCALATION_BATCH_SIZE):
        super().__init__(store, settings, clock)
        self.notifier = notifier or LoggingNotifier()
        self.batch_size = batch_size

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        now = self.clock()
        stall_hours = self.setting('notifications.stallDetectionHours')
        threshold = now - hours(stall_hours * ESCALATION_MULTIPLIER)
        c = self.store.appointment.c

        candidates = self.store.select(
            c.status.in_(ACTIVE),
            c.conversation_stall_alert_at.is_not(None),
            c.conversation_stall_alert_at < threshold,
            c.human_control_enabled.is_(False),
            c.auto_escalated_at.is_(None),
            order_by=c.conversation_stall_alert_at, limit=self.batch_size)

        for appointment in candidates:
            if not ctx.lease_valid:
                break
            stalled_for = (now - appointment.conversation_stall_alert_at).total_seconds() / 3600
            reason = (f'Auto-escalated: Stalled for {round(stalled_for)}h with no agent progress. '
                      f'User: {appointment.display_name}, Therapist: {appointment.therapist_name}')
            try:
                escalated = self.store.update_where(
                    now,
                    c.id == appointment.id,
                    c.human_control_enabled.is_(False),
                    c.auto_escalated_at.is_(None),
                    human_control_enabled=True,
                    human_control_taken_by=AUTO_ESCALATION_ACTOR,
                    human_control_taken_at=now,
                    human_control_reason=reason,
                    auto_escalated_at=now)
            except Exception as e:
                logger.error(f'{ctx.log_prefix} failed to auto-escalate {appointment.id}: {e}')
                stats.failed += 1
                continue
            if not escalated:
                stats.lost += 1
                continue
            stats.bump('escalated')
            logger.warning(f'{ctx.log_prefix} auto-escalated {appointment.id} to human control '
                           f'after {stalled_for:.0f}h stalled')
            try:
                self.notifier.notify_auto_escalation(appointment, stalled_for)
            except Exception as e:
                logger.warning(f'{ctx.log_prefix} escalation notification for {appointment.id} failed: {e}')


class MissedReplyRecovery(JobBody):
    """Ask the reply checker to look for unprocessed replies in waiting threads.
    """
    name = 'reply-recovery'

    def __init__(self, store, settings=None, clock=None, checker: ReplyChecker = None,
                 batch_size: int = REPLY_RECOVERY_BATCH_SIZE):
        super().__init__(store, settings, clock)
        self.checker = checker or no_replies
        self.batch_size = batch_size

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        now = self.clock()
        c = self.store.appointment.c
        waiting = self.store.select(
            c.status.in_([AppointmentStatus.CONTACTED.value, AppointmentStatus.NEGOTIATING.value]),
            c.therapist_gmail_thread_id.is_not(None),
            c.human_control_enabled.is_(False),
            c.last_activity_at < now - hours(REPLY_RECOVERY_INACTIVE_HOURS),
            order_by=c.last_activity_at, limit=self.batch_size)

        for appointment in waiting:
            if not ctx.lease_valid:
                break
            trace_id = f'{ctx.cycle_id}:stale-recovery:{appointment.id}'
            try:
                for side, thread_id in (('therapist', appointment.therapist_gmail_thread_id),
                                        ('client', appointment.gmail_thread_id)):
                    if not thread_id:
                        continue
                    recovered = self.checker(thread_id, trace_id)
                    if recovered:
                        logger.info(f'{ctx.log_prefix} recovered {recovered} missed {side} '
                                    f'repl{"y" if recovered == 1 else "ies"} for {appointment.id}')
                        stats.bump('recovered', recovered)
                stats.bump('checked')
            except Exception as e:
                logger.warning(f'{ctx.log_prefix} failed to check threads for {appointment.id}, '
                               f'will retry next cycle: {e}')
                stats.failed += 1


def stale_check_job(store, settings=None, clock=None, notifier: Notifier = None,
                    checker: ReplyChecker = None, inactivity_handler: InactivityHandler = None) -> CompositeJob:
    """The hourly maintenance cycle, all steps under the stale-check lease.
    """
    return CompositeJob(STALE_CHECK, [
        StaleFlagCheck(store, settings, clock),
        InactivityCheck(store, settings, clock, handler=inactivity_handler),
        StallDetection(store, settings, clock, notifier=notifier),
        MissedReplyRecovery(store, settings, clock, checker=checker),
        AutoEscalation(store, settings, clock, notifier=notifier),
    ])
