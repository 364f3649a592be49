"""Claim/commit dispatch of at-most-once side effects, and stuck-claim recovery.

A side effect for one appointment is guarded by its marker:

    absent --claim--> claimed(token) --commit--> sent
                              \\--revert--> absent

Claim and commit are separate single-row conditional updates. The external
action runs between them, outside any transaction.
"""
import datetime
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from jobkeeper.store import AppointmentStore, Marker
from jobkeeper.utils import utcnow

logger = logging.getLogger(__name__)

__all__ = ['DispatchOutcome', 'CycleStats', 'ClaimCommitDispatcher', 'reconcile_stuck_claims']


class DispatchOutcome(Enum):
    SENT = 'sent'
    LOST_RACE = 'lost_race'
    FAILED = 'failed'
    COMMIT_MISMATCH = 'commit_mismatch'


@dataclass
class CycleStats:
    """Per-cycle counters for one job, rendered as a single summary line.
    """
    job_name: str
    cycle_id: str
    claimed: int = 0
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    lost: int = 0
    mismatched: int = 0
    extra: dict = field(default_factory=dict)

    def record(self, outcome: DispatchOutcome) -> None:
        if outcome is DispatchOutcome.LOST_RACE:
            self.lost += 1
            return
        self.claimed += 1
        if outcome is DispatchOutcome.SENT:
            self.sent += 1
        elif outcome is DispatchOutcome.FAILED:
            self.failed += 1
        elif outcome is DispatchOutcome.COMMIT_MISMATCH:
            self.mismatched += 1

    def bump(self, name: str, n: int = 1) -> None:
        self.extra[name] = self.extra.get(name, 0) + n

    def as_dict(self) -> dict:
        return {
            'claimed': self.claimed,
            'sent': self.sent,
            'skipped': self.skipped,
            'failed': self.failed,
            'lost': self.lost,
            'mismatched': self.mismatched,
            **self.extra,
        }

    def summary_line(self) -> str:
        parts = ' '.join(f'{k}={v}' for k, v in self.as_dict().items())
        return f'[{self.job_name}:{self.cycle_id}] cycle complete: {parts}'


class ClaimCommitDispatcher:
    """Perform one marker-guarded side effect per appointment.

    Args:
        store: Appointment store
        marker: Marker guarding this kind of side effect
        eligible_statuses: Statuses in which a claim may be taken
        clock: Callable returning an aware UTC datetime
    """

    def __init__(self, store: AppointmentStore, marker: Marker, eligible_statuses: Iterable,
                 clock: callable = utcnow):
        self.store = store
        self.marker = Marker(marker)
        self.eligible_statuses = tuple(eligible_statuses)
        self.clock = clock

    def dispatch(self, appointment_id: str, act: callable, cycle_id: str = '-') -> DispatchOutcome:
        """Claim, act, then commit or revert.

        ``act`` is called with no arguments; it returns a falsy value or raises
        to signal failure. It is never called twice for the same claim.

        Returns
            DispatchOutcome for the attempt
        """
        token = uuid.uuid4().hex
        prefix = f'[{self.marker.value}:{cycle_id}] {appointment_id}'

        if not self.store.claim_marker(appointment_id, self.marker, token, self.eligible_statuses, self.clock()):
            logger.debug(f'{prefix}: claim lost to another worker or no longer eligible')
            return DispatchOutcome.LOST_RACE

        try:
            ok = act()
            error = None if ok else 'action reported failure'
        except Exception as e:
            ok = False
            error = f'{type(e).__name__}: {e}'

        if not ok:
            try:
                reverted = self.store.revert_marker(appointment_id, self.marker, token, self.clock())
            except Exception as e:
                logger.error(f'{prefix}: side effect failed ({error}) and revert raised ({e}), '
                             f'claim left for reconciliation')
                return DispatchOutcome.FAILED
            logger.error(f'{prefix}: side effect failed ({error}), claim '
                         f'{"reverted for retry next cycle" if reverted else "already reset"}')
            return DispatchOutcome.FAILED

        now = self.clock()
        try:
            committed = self.store.commit_marker(appointment_id, self.marker, token, now)
            reason = f'claim {token} no longer held at commit'
        except Exception as e:
            committed = False
            reason = f'commit of claim {token} raised {type(e).__name__}: {e}'
        if committed:
            return DispatchOutcome.SENT

        logger.critical(
            f'ALERT {prefix}: side effect performed but {reason}. '
            f'Another worker may repeat it. Manual review required.')
        try:
            self.store.append_note(
                appointment_id,
                f'{self.marker.value} was sent but could not be recorded ({reason}). '
                f'Check for a duplicate before any manual resend.',
                now)
        except Exception as e:
            logger.error(f'{prefix}: failed to note unrecorded send: {e}')
        return DispatchOutcome.COMMIT_MISMATCH


def reconcile_stuck_claims(store: AppointmentStore, grace_sec: float = 120,
                           clock: callable = utcnow, markers: Iterable = tuple(Marker)) -> dict[Marker, int]:
    """Reset claims older than ``grace_sec`` back to absent.

    A claim this old belongs to a worker that crashed between claim and
    commit. If that worker in fact performed the action, the next cycle
    performs it again; the grace window must exceed the slowest real action.

    Returns
        Mapping of marker to number of rows reset
    """
    now = clock()
    cutoff = now - datetime.timedelta(seconds=grace_sec)
    reset = {}
    for marker in markers:
        count = store.reset_stuck_claims(Marker(marker), cutoff, now)
        reset[Marker(marker)] = count
        if count:
            logger.warning(f'Reset {count} stuck {Marker(marker).value} claim(s) older than {grace_sec}s')
    return reset
