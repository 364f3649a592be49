"""Shared state store: engine context, appointment model and conditional updates.

Every mutation here is a single statement whose ``rowcount`` tells the caller
whether it won. No method holds a transaction open across a network call.
"""
import contextlib
import datetime
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

import sqlalchemy as sa
from sqlalchemy import create_engine, text

from jobkeeper.config import KeeperConfig
from jobkeeper.schema import get_table_names, get_tables
from jobkeeper.utils import EPOCH, as_utc, utcnow

logger = logging.getLogger(__name__)

__all__ = ['AppointmentStatus', 'Marker', 'Absent', 'Claimed', 'Sent',
           'Appointment', 'DatabaseContext', 'AppointmentStore']


# ============================================================
# DOMAIN TYPES
# ============================================================

class AppointmentStatus(str, Enum):
    PENDING = 'pending'
    CONTACTED = 'contacted'
    NEGOTIATING = 'negotiating'
    CONFIRMED = 'confirmed'
    SESSION_HELD = 'session_held'
    FEEDBACK_REQUESTED = 'feedback_requested'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'


ACTIVE_STATUSES = (
    AppointmentStatus.PENDING,
    AppointmentStatus.CONTACTED,
    AppointmentStatus.NEGOTIATING,
)


class Marker(str, Enum):
    """Follow-up side effects tracked per appointment.
    """
    MEETING_LINK_CHECK = 'meeting_link_check'
    FEEDBACK_FORM = 'feedback_form'
    FEEDBACK_REMINDER = 'feedback_reminder'
    SESSION_REMINDER = 'session_reminder'

    @property
    def at_column(self) -> str:
        return f'{self.value}_at'

    @property
    def claim_column(self) -> str:
        return f'{self.value}_claim'


@dataclass(frozen=True)
class Absent:
    pass


@dataclass(frozen=True)
class Claimed:
    at: datetime.datetime
    token: str = None


@dataclass(frozen=True)
class Sent:
    at: datetime.datetime


MarkerState = Absent | Claimed | Sent


def decode_marker(at: datetime.datetime | None, claim: str | None) -> MarkerState:
    """Storage columns -> tagged marker value.

    Rows written before claim tokens existed use the epoch timestamp as the
    in-flight sentinel; those decode as a token-less claim.
    """
    at = as_utc(at)
    if at is None:
        return Absent()
    if claim is not None:
        return Claimed(at, claim)
    if at == EPOCH:
        return Claimed(at, None)
    return Sent(at)


def _status_values(statuses: Iterable) -> list[str]:
    return [AppointmentStatus(s).value for s in statuses]


@dataclass
class Appointment:
    """Read model of one appointment row.
    """
    id: str
    status: AppointmentStatus
    user_email: str
    therapist_name: str
    last_activity_at: datetime.datetime
    updated_at: datetime.datetime
    created_at: datetime.datetime = None
    user_name: str = None
    therapist_email: str = None
    tracking_code: str = None
    gmail_thread_id: str = None
    therapist_gmail_thread_id: str = None
    notes: str = None
    confirmed_at: datetime.datetime = None
    confirmed_datetime: str = None
    confirmed_datetime_parsed: datetime.datetime = None
    is_stale: bool = False
    last_tool_executed_at: datetime.datetime = None
    last_tool_failure_reason: str = None
    conversation_stall_alert_at: datetime.datetime = None
    conversation_stall_acknowledged: bool = False
    human_control_enabled: bool = False
    human_control_taken_by: str = None
    human_control_taken_at: datetime.datetime = None
    human_control_reason: str = None
    auto_escalated_at: datetime.datetime = None
    markers: dict = None

    @classmethod
    def from_row(cls, row) -> 'Appointment':
        data = dict(row._mapping)
        markers = {m: decode_marker(data.pop(m.at_column, None), data.pop(m.claim_column, None))
                   for m in Marker}
        kwargs = {}
        for name in cls.__dataclass_fields__:
            if name in data:
                value = data[name]
                if isinstance(value, datetime.datetime):
                    value = as_utc(value)
                kwargs[name] = value
        kwargs['status'] = AppointmentStatus(kwargs['status'])
        return cls(markers=markers, **kwargs)

    def marker(self, marker: Marker) -> MarkerState:
        return (self.markers or {}).get(marker, Absent())

    @property
    def display_name(self) -> str:
        return self.user_name or self.user_email


# ============================================================
# ENGINE CONTEXT
# ============================================================

class DatabaseContext:
    """Manages database engine, connections, and table names.
    """

    def __init__(self, config: KeeperConfig = None, engine: sa.Engine = None):
        """Initialize database context.

        Args:
            config: Keeper configuration with connection parameters
            engine: Existing engine to reuse instead of building one from config
        """
        config = config or KeeperConfig()
        if engine is None:
            engine = create_engine(config.connection_string, pool_pre_ping=True, pool_size=10, max_overflow=5)
        self.engine = engine
        self.appname = config.appname
        self.tables = get_table_names(config.appname)
        self.t = get_tables(config.appname)

    def execute(self, statement, params: dict = None):
        """Execute statement with automatic commit.

        Args:
            statement: SQL string or SQLAlchemy Core statement
            params: Optional parameters for the statement

        Returns
            Result proxy object
        """
        if isinstance(statement, str):
            statement = text(statement)
        with self.engine.connect() as conn:
            result = conn.execute(statement, params or {})
            conn.commit()
            return result

    def query(self, statement, params: dict = None) -> list:
        """Execute query and return all rows.

        Args:
            statement: SQL string or SQLAlchemy Core statement
            params: Optional parameters for the query

        Returns
            List of row objects
        """
        if isinstance(statement, str):
            statement = text(statement)
        with self.engine.connect() as conn:
            result = conn.execute(statement, params or {})
            return list(result)

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text('SELECT 1'))
            return True
        except Exception:
            return False

    def dispose(self) -> None:
        """Dispose of engine resources.
        """
        with contextlib.suppress(Exception):
            self.engine.dispose()


# ============================================================
# APPOINTMENT STORE
# ============================================================

class AppointmentStore:
    """Conditional reads and writes against the appointment table.

    Conditional writes take ``now`` from the caller's clock.
    """

    def __init__(self, db: DatabaseContext):
        self.db = db
        self.appointment = db.t['Appointment']
        self.pending_email = db.t['PendingEmail']
        self.processed_message = db.t['ProcessedMessage']

    # -------- reads --------

    def get(self, appointment_id: str) -> Appointment | None:
        rows = self.db.query(sa.select(self.appointment).where(self.appointment.c.id == appointment_id))
        return Appointment.from_row(rows[0]) if rows else None

    def select(self, *where, order_by=None, limit: int = None) -> list[Appointment]:
        stmt = sa.select(self.appointment).where(*where)
        if order_by is not None:
            stmt = stmt.order_by(order_by, self.appointment.c.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [Appointment.from_row(row) for row in self.db.query(stmt)]

    def marker_absent(self, marker: Marker):
        """Clause: marker never claimed nor sent.
        """
        return self.appointment.c[marker.at_column].is_(None)

    def marker_sent_before(self, marker: Marker, before: datetime.datetime):
        """Clause: marker sent, and sent before ``before``.
        """
        c = self.appointment.c
        return sa.and_(c[marker.claim_column].is_(None),
                       c[marker.at_column] > EPOCH,
                       c[marker.at_column] < before)

    # -------- writes: plain --------

    def insert(self, now: datetime.datetime = None, **values) -> str:
        """Insert an appointment row (used by collaborators and tests).
        """
        now = now or utcnow()
        values.setdefault('status', AppointmentStatus.PENDING.value)
        values['status'] = AppointmentStatus(values['status']).value
        values.setdefault('last_activity_at', now)
        values.setdefault('created_at', now)
        values.setdefault('updated_at', now)
        values.setdefault('is_stale', False)
        values.setdefault('conversation_stall_acknowledged', False)
        values.setdefault('human_control_enabled', False)
        self.db.execute(sa.insert(self.appointment).values(**values))
        return values['id']

    def update_where(self, now: datetime.datetime, *where, **values) -> int:
        """Conditional UPDATE; returns number of rows actually changed.
        """
        values['updated_at'] = now
        stmt = sa.update(self.appointment).where(*where).values(**values)
        return self.db.execute(stmt).rowcount

    def append_note(self, appointment_id: str, note: str, now: datetime.datetime) -> None:
        """Append a system line to the notes column for operator review.
        """
        c = self.appointment.c
        line = f'[SYSTEM ALERT {now.isoformat()}]: {note}'
        stmt = (sa.update(self.appointment)
                .where(c.id == appointment_id)
                .values(notes=sa.case((c.notes.is_(None), line),
                                      else_=c.notes + '\n' + line),
                        updated_at=now))
        self.db.execute(stmt)

    def store_parsed_datetime(self, appointment_id: str, parsed: datetime.datetime, now: datetime.datetime) -> bool:
        c = self.appointment.c
        return self.update_where(
            now, c.id == appointment_id, c.confirmed_datetime_parsed.is_(None),
            confirmed_datetime_parsed=parsed) == 1

    def transition_status(self, appointment_id: str, from_statuses: Iterable, to_status: AppointmentStatus,
                          now: datetime.datetime) -> bool:
        c = self.appointment.c
        return self.update_where(
            now, c.id == appointment_id, c.status.in_(_status_values(from_statuses)),
            status=AppointmentStatus(to_status).value) == 1

    # -------- writes: marker protocol --------

    def claim_marker(self, appointment_id: str, marker: Marker, token: str, statuses: Iterable,
                     now: datetime.datetime) -> bool:
        """absent -> claimed, only while status is still eligible.
        """
        c = self.appointment.c
        return self.update_where(
            now,
            c.id == appointment_id,
            c[marker.at_column].is_(None),
            c.status.in_(_status_values(statuses)),
            **{marker.at_column: now, marker.claim_column: token}) == 1

    def commit_marker(self, appointment_id: str, marker: Marker, token: str, now: datetime.datetime) -> bool:
        """claimed(token) -> sent.
        """
        c = self.appointment.c
        return self.update_where(
            now,
            c.id == appointment_id,
            c[marker.claim_column] == token,
            **{marker.at_column: now, marker.claim_column: None}) == 1

    def revert_marker(self, appointment_id: str, marker: Marker, token: str, now: datetime.datetime) -> bool:
        """claimed(token) -> absent.
        """
        c = self.appointment.c
        return self.update_where(
            now,
            c.id == appointment_id,
            c[marker.claim_column] == token,
            **{marker.at_column: None, marker.claim_column: None}) == 1

    def reset_stuck_claims(self, marker: Marker, claimed_before: datetime.datetime, now: datetime.datetime) -> int:
        """claimed -> absent for claims older than ``claimed_before``.

        Covers token claims by claim time and legacy epoch sentinels by the
        row's last modification.
        """
        c = self.appointment.c
        token_claims = sa.and_(c[marker.claim_column].is_not(None),
                               c[marker.at_column] < claimed_before)
        legacy_claims = sa.and_(c[marker.claim_column].is_(None),
                                c[marker.at_column] == EPOCH,
                                c.updated_at < claimed_before)
        return self.update_where(
            now, sa.or_(token_claims, legacy_claims),
            **{marker.at_column: None, marker.claim_column: None})

    # -------- retention --------

    def delete_batch(self, *where, batch_size: int) -> int:
        """Delete up to ``batch_size`` appointments and their pending emails in one transaction.
        """
        a = self.appointment
        pe = self.pending_email
        with self.db.engine.connect() as conn:
            ids = [row[0] for row in conn.execute(
                sa.select(a.c.id).where(*where).order_by(a.c.updated_at).limit(batch_size))]
            if not ids:
                conn.rollback()
                return 0
            conn.execute(sa.delete(pe).where(pe.c.appointment_id.in_(ids)))
            deleted = conn.execute(sa.delete(a).where(a.c.id.in_(ids))).rowcount
            conn.commit()
        return deleted

    def purge_processed_messages(self, before: datetime.datetime) -> int:
        pm = self.processed_message
        return self.db.execute(sa.delete(pm).where(pm.c.processed_at < before)).rowcount

    def purge_abandoned_emails(self, before: datetime.datetime) -> int:
        pe = self.pending_email
        return self.db.execute(sa.delete(pe).where(
            pe.c.status == 'abandoned', pe.c.last_retry_at < before)).rowcount
