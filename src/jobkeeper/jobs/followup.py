"""Post-booking follow-up emails, each sent at most once per appointment.

Every cycle first resets claims abandoned by crashed workers, then parses
free-text session times, then walks each follow-up type oldest-due first.
"""
import datetime
import logging

from jobkeeper.backoff import BackoffTracker
from jobkeeper.collaborators import DatetimeParser, FollowupKind, FollowupSender, LoggingSender
from jobkeeper.collaborators import iso_datetime_parser
from jobkeeper.config import FOLLOWUP_DISPATCH
from jobkeeper.dispatch import ClaimCommitDispatcher, CycleStats, DispatchOutcome, reconcile_stuck_claims
from jobkeeper.jobs.base import JobBody
from jobkeeper.runner import RunContext
from jobkeeper.store import Appointment, AppointmentStatus, Marker
from jobkeeper.utils import hours

logger = logging.getLogger(__name__)

BATCH_SIZE = 50
MAX_PARSE_ATTEMPTS = 3
PARSE_FAILURE_RESET_SEC = 60 * 60
DAILY_REPARSE_SEC = 24 * 60 * 60
MAX_PARSE_FAILURES = 500

FEEDBACK_FORM_STATUSES = (AppointmentStatus.SESSION_HELD, AppointmentStatus.CONFIRMED)


def meeting_link_check_time(confirmed_at: datetime.datetime, session_at: datetime.datetime,
                            after_confirm_hours: float = 24, before_session_hours: float = 4) -> datetime.datetime:
    """When to ask whether the meeting link arrived: the earlier of a day
    after confirmation and a few hours before the session.
    """
    return min(confirmed_at + hours(after_confirm_hours), session_at - hours(before_session_hours))


class FollowupDispatch(JobBody):
    """Reconcile, parse, then dispatch the four follow-up kinds.
    """
    name = FOLLOWUP_DISPATCH

    def __init__(self, store, settings=None, clock=None, sender: FollowupSender = None,
                 parser: DatetimeParser = None, backoff: BackoffTracker = None,
                 claim_grace_sec: float = 120, batch_size: int = BATCH_SIZE):
        super().__init__(store, settings, clock)
        self.sender = sender or LoggingSender()
        self.parser = parser or iso_datetime_parser
        self.backoff = backoff or BackoffTracker(
            max_attempts=MAX_PARSE_ATTEMPTS, reset_after_sec=PARSE_FAILURE_RESET_SEC,
            force_retry_after_sec=DAILY_REPARSE_SEC, capacity=MAX_PARSE_FAILURES)
        self.claim_grace_sec = claim_grace_sec
        self.batch_size = batch_size

    def dispatcher(self, marker: Marker, statuses) -> ClaimCommitDispatcher:
        return ClaimCommitDispatcher(self.store, marker, statuses, clock=self.clock)

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        reset = reconcile_stuck_claims(self.store, self.claim_grace_sec, self.clock)
        stats.bump('claims_reset', sum(reset.values()))

        phases = (
            self.parse_unparsed_datetimes,
            self.send_session_reminders,
            self.send_meeting_link_checks,
            self.send_feedback_forms,
            self.send_feedback_reminders,
        )
        for phase in phases:
            if not ctx.lease_valid:
                logger.warning(f'{ctx.log_prefix} lease lost, stopping before {phase.__name__}')
                return
            phase(ctx, stats)

    # -------- parsing --------

    def parse_unparsed_datetimes(self, ctx: RunContext, stats: CycleStats) -> None:
        c = self.store.appointment.c
        unparsed = self.store.select(
            c.status == AppointmentStatus.CONFIRMED.value,
            c.confirmed_datetime.is_not(None),
            c.confirmed_datetime_parsed.is_(None),
            order_by=c.updated_at, limit=self.batch_size)

        for appointment in unparsed:
            if not ctx.lease_valid:
                return
            if self.backoff.should_skip(appointment.id):
                stats.skipped += 1
                stats.bump('parse_skipped')
                continue
            now = self.clock()
            try:
                parsed = self.parser(appointment.confirmed_datetime, appointment.confirmed_at or now)
            except Exception as e:
                logger.debug(f'{ctx.log_prefix} parser raised for {appointment.id}: {e}')
                parsed = None

            if parsed is None:
                count = self.backoff.record_failure(appointment.id)
                if count == 1:
                    logger.warning(f'{ctx.log_prefix} failed to parse confirmed datetime '
                                   f'{appointment.confirmed_datetime!r} for {appointment.id}, will retry')
                elif count == self.backoff.max_attempts:
                    logger.error(f'{ctx.log_prefix} failed to parse confirmed datetime '
                                 f'{appointment.confirmed_datetime!r} for {appointment.id} after {count} '
                                 f'attempts, backing off')
                stats.bump('parse_failed')
                continue

            try:
                self.store.store_parsed_datetime(appointment.id, parsed, now)
            except Exception as e:
                logger.error(f'{ctx.log_prefix} failed to store parsed datetime for {appointment.id}, '
                             f'will retry next cycle: {e}')
                continue
            self.backoff.record_success(appointment.id)
            stats.bump('parsed')

    # -------- follow-ups --------

    def _dispatch_all(self, ctx: RunContext, stats: CycleStats, dispatcher: ClaimCommitDispatcher,
                      candidates: list[Appointment], act_for: callable) -> list[Appointment]:
        sent = []
        for appointment in candidates:
            if not ctx.lease_valid:
                break
            outcome = dispatcher.dispatch(appointment.id, act_for(appointment), ctx.cycle_id)
            stats.record(outcome)
            if outcome is DispatchOutcome.SENT:
                stats.bump(f'{dispatcher.marker.value}_sent')
                sent.append(appointment)
        return sent

    def _send(self, kind: str, recipient: str):
        def act_for(appointment: Appointment):
            return lambda: self.sender.send(kind, appointment, recipient)
        return act_for

    def send_session_reminders(self, ctx: RunContext, stats: CycleStats) -> None:
        now = self.clock()
        window = hours(self.setting('postBooking.sessionReminderHoursBefore'))
        c = self.store.appointment.c
        candidates = self.store.select(
            c.status == AppointmentStatus.CONFIRMED.value,
            c.confirmed_datetime_parsed > now,
            c.confirmed_datetime_parsed <= now + window,
            self.store.marker_absent(Marker.SESSION_REMINDER),
            order_by=c.confirmed_datetime_parsed, limit=self.batch_size)

        def act_for(appointment: Appointment):
            return lambda: self._remind_both(ctx, appointment)

        self._dispatch_all(ctx, stats, self.dispatcher(Marker.SESSION_REMINDER, [AppointmentStatus.CONFIRMED]),
                           candidates, act_for)

    def _remind_both(self, ctx: RunContext, appointment: Appointment) -> bool:
        """Send to user and therapist. One success is enough to commit.
        """
        results = {}
        for recipient, address in (('user', appointment.user_email), ('therapist', appointment.therapist_email)):
            if not address:
                continue
            try:
                results[recipient] = bool(self.sender.send(FollowupKind.SESSION_REMINDER, appointment, recipient))
            except Exception as e:
                logger.error(f'{ctx.log_prefix} session reminder to {recipient} for {appointment.id} failed: {e}')
                results[recipient] = False

        if not any(results.values()):
            return False
        failed = [r for r, ok in results.items() if not ok]
        if failed:
            logger.warning(f'{ctx.log_prefix} partial session reminder for {appointment.id}, '
                           f'failed for {", ".join(failed)}')
            self.store.append_note(
                appointment.id,
                f'Session reminder failed for {", ".join(failed)} - manual follow-up may be needed',
                self.clock())
        return True

    def send_meeting_link_checks(self, ctx: RunContext, stats: CycleStats) -> None:
        now = self.clock()
        c = self.store.appointment.c
        candidates = self.store.select(
            c.status == AppointmentStatus.CONFIRMED.value,
            c.confirmed_datetime_parsed > now,
            c.confirmed_at.is_not(None),
            self.store.marker_absent(Marker.MEETING_LINK_CHECK),
            order_by=c.confirmed_datetime_parsed, limit=self.batch_size)

        after_confirm = self.setting('postBooking.meetingLinkCheckHoursAfterConfirm')
        before_session = self.setting('postBooking.meetingLinkCheckHoursBeforeSession')
        due = [a for a in candidates
               if meeting_link_check_time(a.confirmed_at, a.confirmed_datetime_parsed,
                                          after_confirm, before_session) <= now]

        self._dispatch_all(ctx, stats, self.dispatcher(Marker.MEETING_LINK_CHECK, [AppointmentStatus.CONFIRMED]),
                           due, self._send(FollowupKind.MEETING_LINK_CHECK, 'user'))

    def send_feedback_forms(self, ctx: RunContext, stats: CycleStats) -> None:
        now = self.clock()
        delay = hours(self.setting('postBooking.feedbackFormHoursAfterSession'))
        c = self.store.appointment.c
        candidates = self.store.select(
            c.status.in_([s.value for s in FEEDBACK_FORM_STATUSES]),
            c.confirmed_datetime_parsed <= now - delay,
            self.store.marker_absent(Marker.FEEDBACK_FORM),
            order_by=c.confirmed_datetime_parsed, limit=self.batch_size)

        sent = self._dispatch_all(ctx, stats, self.dispatcher(Marker.FEEDBACK_FORM, FEEDBACK_FORM_STATUSES),
                                  candidates, self._send(FollowupKind.FEEDBACK_FORM, 'user'))
        for appointment in sent:
            moved = self.store.transition_status(
                appointment.id, FEEDBACK_FORM_STATUSES, AppointmentStatus.FEEDBACK_REQUESTED, self.clock())
            if not moved:
                logger.warning(f'{ctx.log_prefix} feedback form sent for {appointment.id} but status '
                               f'changed before the transition to feedback_requested')

    def send_feedback_reminders(self, ctx: RunContext, stats: CycleStats) -> None:
        if not self.setting('notifications.email.feedbackReminder'):
            logger.debug(f'{ctx.log_prefix} feedback reminders disabled')
            return
        now = self.clock()
        delay = hours(self.setting('postBooking.feedbackReminderDelayHours'))
        c = self.store.appointment.c
        candidates = self.store.select(
            c.status == AppointmentStatus.FEEDBACK_REQUESTED.value,
            self.store.marker_sent_before(Marker.FEEDBACK_FORM, now - delay),
            self.store.marker_absent(Marker.FEEDBACK_REMINDER),
            order_by=c[Marker.FEEDBACK_FORM.at_column], limit=self.batch_size)

        self._dispatch_all(ctx, stats,
                           self.dispatcher(Marker.FEEDBACK_REMINDER, [AppointmentStatus.FEEDBACK_REQUESTED]),
                           candidates, self._send(FollowupKind.FEEDBACK_REMINDER, 'user'))
