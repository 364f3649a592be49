"""Interfaces for the side effects the keeper triggers but does not own.

Email and Slack content, the mail provider, free-text datetime parsing and
therapist-level inactivity handling live elsewhere. The defaults here only log,
so a bare deployment runs without them.
"""
import datetime
import logging
from typing import Protocol

from jobkeeper.store import Appointment

logger = logging.getLogger(__name__)


class FollowupKind:
    SESSION_REMINDER = 'session_reminder'
    MEETING_LINK_CHECK = 'meeting_link_check'
    FEEDBACK_FORM = 'feedback_form'
    FEEDBACK_REMINDER = 'feedback_reminder'


class FollowupSender(Protocol):
    def send(self, kind: str, appointment: Appointment, recipient: str) -> bool:
        ...


class Notifier(Protocol):
    def notify_stall(self, appointment: Appointment, hours_since_activity: float) -> None:
        ...

    def notify_auto_escalation(self, appointment: Appointment, hours_since_alert: float) -> None:
        ...


class ReplyChecker(Protocol):
    def __call__(self, thread_id: str, trace_id: str) -> int:
        ...


class DatetimeParser(Protocol):
    def __call__(self, text: str, reference: datetime.datetime) -> datetime.datetime | None:
        ...


class InactivityHandler(Protocol):
    def __call__(self, threshold_hours: float) -> dict:
        ...


class LoggingSender:
    """Records the follow-up in the log and reports success.
    """

    def send(self, kind: str, appointment: Appointment, recipient: str) -> bool:
        logger.info(f'Follow-up {kind} for appointment {appointment.id} to {recipient}')
        return True


class LoggingNotifier:

    def notify_stall(self, appointment: Appointment, hours_since_activity: float) -> None:
        logger.warning(f'Conversation stalled for appointment {appointment.id} '
                       f'({appointment.display_name} / {appointment.therapist_name}), '
                       f'{hours_since_activity:.1f}h since activity')

    def notify_auto_escalation(self, appointment: Appointment, hours_since_alert: float) -> None:
        logger.warning(f'Appointment {appointment.id} auto-escalated to human control, '
                       f'stall alert unacknowledged for {hours_since_alert:.1f}h')


def no_replies(thread_id: str, trace_id: str) -> int:
    logger.debug(f'[{trace_id}] No reply checker configured, skipping thread {thread_id}')
    return 0


def iso_datetime_parser(text: str, reference: datetime.datetime) -> datetime.datetime | None:
    """Parse ISO-8601 text; naive values are taken as UTC.

    >>> iso_datetime_parser('2026-03-01T10:00:00+00:00', None).hour
    10
    >>> iso_datetime_parser('next tuesday afternoon', None) is None
    True
    """
    try:
        parsed = datetime.datetime.fromisoformat(text.strip())
    except (AttributeError, ValueError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed
