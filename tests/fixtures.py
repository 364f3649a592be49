"""Shared test fixtures, utilities, and helpers.

USE THIS FILE FOR:
- Fake clocks driving every time-based property
- Store and config builders
- Appointment factories
- Recording collaborators (sender, notifier, reply checker)
- Wait helpers
"""
import datetime
import logging
import threading
import time
import uuid

import sqlalchemy as sa

from jobkeeper.config import JobSchedule, KeeperConfig
from jobkeeper.runner import RunContext
from jobkeeper.store import AppointmentStore, DatabaseContext, Marker
from jobkeeper.utils import new_cycle_id

logger = logging.getLogger(__name__)

T0 = datetime.datetime(2026, 3, 2, 12, 0, 0, tzinfo=datetime.timezone.utc)


# ============================================================================
# CLOCKS
# ============================================================================

class FakeClock:
    """Settable UTC clock: ``clock()`` returns the current fake time.
    """

    def __init__(self, start: datetime.datetime = T0):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime.datetime:
        with self._lock:
            return self.now

    def advance(self, **kwargs) -> datetime.datetime:
        with self._lock:
            self.now += datetime.timedelta(**kwargs)
            return self.now


class FakeMonotonic:
    """Settable monotonic seconds for the backoff tracker and memory leases.
    """

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


# ============================================================================
# CONFIG AND STORE BUILDERS
# ============================================================================

def keeper_config(**overrides) -> KeeperConfig:
    """KeeperConfig with memory leases and fast, non-firing schedules.

    Usage:
        config = keeper_config()
        config = keeper_config(lease_backend='sql', claim_grace_sec=30)
    """
    schedules = {
        name: JobSchedule(interval_sec=3600, lease_ttl_sec=30, renew_interval_sec=10,
                          duration_budget_sec=60, initial_delay_sec=3600)
        for name in ('stale-check', 'retention-cleanup', 'followup-dispatch')
    }
    defaults = {'lease_backend': 'memory', 'schedules': schedules}
    defaults.update(overrides)
    return KeeperConfig(**defaults)


def make_store(engine, appname: str = 'keeper_') -> AppointmentStore:
    return AppointmentStore(DatabaseContext(KeeperConfig(appname=appname), engine=engine))


def make_ctx(job_name: str = 'test-job') -> RunContext:
    return RunContext(job_name=job_name, cycle_id=new_cycle_id(), started_at=T0)


# ============================================================================
# DATA FACTORIES
# ============================================================================

def insert_appointment(store: AppointmentStore, now: datetime.datetime = T0, **values) -> str:
    """Insert one appointment with sensible defaults and return its id.
    """
    values.setdefault('id', f'apt-{uuid.uuid4().hex[:10]}')
    values.setdefault('user_email', 'client@example.com')
    values.setdefault('user_name', 'Casey Client')
    values.setdefault('therapist_name', 'Dr. Rivera')
    values.setdefault('therapist_email', 'rivera@example.com')
    return store.insert(now=now, **values)


def force_marker(store: AppointmentStore, appointment_id: str, marker: Marker, at: datetime.datetime,
                 token: str = None) -> None:
    """Write marker columns directly, leaving ``updated_at`` alone.
    """
    t = store.appointment
    store.db.execute(sa.update(t).where(t.c.id == appointment_id)
                     .values(**{marker.at_column: at, marker.claim_column: token}))


def set_columns(store: AppointmentStore, appointment_id: str, **values) -> None:
    t = store.appointment
    store.db.execute(sa.update(t).where(t.c.id == appointment_id).values(**values))


def insert_pending_email(store: AppointmentStore, appointment_id: str = None, status: str = 'pending',
                         last_retry_at: datetime.datetime = None) -> str:
    email_id = f'pe-{uuid.uuid4().hex[:10]}'
    store.db.execute(sa.insert(store.pending_email).values(
        id=email_id, appointment_id=appointment_id, status=status, last_retry_at=last_retry_at))
    return email_id


def insert_processed_message(store: AppointmentStore, processed_at: datetime.datetime) -> str:
    message_id = f'msg-{uuid.uuid4().hex[:10]}'
    store.db.execute(sa.insert(store.processed_message).values(
        message_id=message_id, processed_at=processed_at))
    return message_id


def count_rows(store: AppointmentStore, table_key: str) -> int:
    table = store.db.t[table_key]
    return store.db.query(sa.select(sa.func.count()).select_from(table))[0][0]


# ============================================================================
# RECORDING COLLABORATORS
# ============================================================================

class RecordingSender:
    """FollowupSender that records sends and fails on demand.

    Usage:
        sender = RecordingSender(fail_for={'therapist'})
    """

    def __init__(self, fail_for: set = None, raise_for: set = None, delay: float = 0):
        self.fail_for = set(fail_for or ())
        self.raise_for = set(raise_for or ())
        self.delay = delay
        self.sent = []
        self._lock = threading.Lock()

    def send(self, kind, appointment, recipient) -> bool:
        if self.delay:
            time.sleep(self.delay)
        if recipient in self.raise_for or kind in self.raise_for:
            raise ConnectionError(f'mail transport down for {recipient}')
        if recipient in self.fail_for or kind in self.fail_for:
            return False
        with self._lock:
            self.sent.append((kind, appointment.id, recipient))
        return True

    def kinds(self) -> list[str]:
        return [kind for kind, _, _ in self.sent]


class RecordingNotifier:

    def __init__(self):
        self.stalls = []
        self.escalations = []

    def notify_stall(self, appointment, hours_since_activity):
        self.stalls.append(appointment.id)

    def notify_auto_escalation(self, appointment, hours_since_alert):
        self.escalations.append((appointment.id, round(hours_since_alert)))


class RecordingReplyChecker:

    def __init__(self, replies: dict = None, fail_for: set = None):
        self.replies = replies or {}
        self.fail_for = set(fail_for or ())
        self.calls = []

    def __call__(self, thread_id, trace_id):
        self.calls.append((thread_id, trace_id))
        if thread_id in self.fail_for:
            raise TimeoutError(f'mail provider timed out on {thread_id}')
        return self.replies.get(thread_id, 0)


# ============================================================================
# WAIT HELPERS
# ============================================================================

def wait_for(condition: callable, timeout_sec: float = 5.0, check_interval: float = 0.02) -> bool:
    """Wait for a condition function to return True.

    Usage:
        assert wait_for(lambda: runner.counters['runs'] >= 2)
    """
    start = time.time()
    while time.time() - start < timeout_sec:
        if condition():
            return True
        time.sleep(check_interval)
    return False
