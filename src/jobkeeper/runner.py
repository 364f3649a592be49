"""Periodic job runner: local guard, lease, renewal and a catch-all boundary.

One runner owns one job type in one process. A cycle goes

    idle -> acquiring -> running -> idle

and the runner moves to ``stopped`` once shut down.
"""
import datetime
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from enum import Enum

from jobkeeper.config import JobSchedule
from jobkeeper.lease import LeaseLock
from jobkeeper.utils import new_cycle_id, utcnow

logger = logging.getLogger(__name__)

__all__ = ['RunnerState', 'RunContext', 'RunResult', 'LeaseRenewer', 'JobRunner']


class RunnerState(Enum):
    IDLE = 'idle'
    ACQUIRING = 'acquiring'
    RUNNING = 'running'
    STOPPED = 'stopped'


@dataclass
class RunContext:
    """Passed to a job body for one cycle.

    Bodies check ``lease_valid`` between records and stop early once the
    lease is gone.
    """
    job_name: str
    cycle_id: str
    started_at: datetime.datetime
    lease_valid: bool = True

    def mark_lease_lost(self) -> None:
        self.lease_valid = False

    @property
    def log_prefix(self) -> str:
        return f'[{self.job_name}:{self.cycle_id}]'


@dataclass
class RunResult:
    acquired: bool
    skipped_reason: str = None
    summary: dict = None
    error: str = None
    duration_sec: float = 0.0
    lease_lost: bool = False


# ============================================================
# LEASE RENEWAL
# ============================================================

class LeaseRenewer:
    """Background thread extending a held lease until stopped or lost.
    """

    def __init__(self, lease: LeaseLock, key: str, owner_id: str, ttl_sec: float, interval: float,
                 on_lost: callable):
        """Initialize renewer.

        Args:
            lease: Lease backend
            key: Lease key
            owner_id: Holder identity
            ttl_sec: TTL applied on each renewal
            interval: Seconds between renewals, below ``ttl_sec``
            on_lost: Called once, from the renewal thread, when renewal fails
        """
        self.lease = lease
        self.key = key
        self.owner_id = owner_id
        self.ttl_sec = ttl_sec
        self.interval = interval
        self.on_lost = on_lost
        self.renewals = 0
        self._stop_event = threading.Event()
        self.thread = None

    def start(self) -> None:
        self.thread = threading.Thread(target=self._run, daemon=True, name=f'renew-{self.key}')
        self.thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self.thread is not None and self.thread is not threading.current_thread():
            self.thread.join(timeout=self.interval + 5)

    def _run(self) -> None:
        while not self._stop_event.wait(timeout=self.interval):
            try:
                renewed = self.lease.renew(self.key, self.owner_id, self.ttl_sec)
            except Exception as e:
                logger.warning(f'Lease renewal for {self.key} raised: {e}')
                renewed = False
            if renewed:
                self.renewals += 1
                logger.debug(f'Lease {self.key} renewed by {self.owner_id}')
                continue
            if self._stop_event.is_set():
                return
            try:
                self.on_lost()
            except Exception as e:
                logger.error(f'Lease loss handler for {self.key} failed: {e}', exc_info=True)
            return


# ============================================================
# RUNNER
# ============================================================

class JobRunner:
    """Runs one job body on a fixed interval under a lease.

    Args:
        name: Job name, also the lease key
        body: Callable taking a RunContext and returning a summary dict
        lease: Lease backend shared by all processes
        owner_id: Lease owner identity for this process
        schedule: Interval, ttl, renewal and budget settings
        clock: Callable returning an aware UTC datetime
    """

    def __init__(self, name: str, body: callable, lease: LeaseLock, owner_id: str, schedule: JobSchedule,
                 clock: callable = utcnow):
        schedule.validate(name)
        self.name = name
        self.body = body
        self.lease = lease
        self.owner_id = owner_id
        self.schedule = schedule
        self.clock = clock

        self.state = RunnerState.IDLE
        self.shutdown_event = threading.Event()
        self.thread = None

        self._guard = threading.Lock()
        self._active_run = None
        self._status_lock = threading.Lock()
        self.counters = {
            'runs': 0,
            'succeeded': 0,
            'failed': 0,
            'skipped_in_progress': 0,
            'skipped_not_acquired': 0,
            'lease_lost': 0,
            'overruns': 0,
        }
        self.last_error = None
        self.last_summary = None
        self.last_started_at = None
        self.last_finished_at = None
        self.last_duration_sec = None

    # -------- local guard --------

    def _enter_guard(self) -> str | None:
        with self._guard:
            if self._active_run is not None:
                return None
            self._active_run = uuid.uuid4().hex
            return self._active_run

    def _clear_guard(self, run_token: str) -> None:
        with self._guard:
            if self._active_run == run_token:
                self._active_run = None

    @property
    def in_progress(self) -> bool:
        with self._guard:
            return self._active_run is not None

    def _bump(self, counter: str) -> None:
        with self._status_lock:
            self.counters[counter] += 1

    # -------- one cycle --------

    def run_once(self) -> RunResult:
        """Run a single cycle synchronously. Never raises.
        """
        run_token = self._enter_guard()
        if run_token is None:
            logger.info(f'{self.name} still running locally, skipping this tick')
            self._bump('skipped_in_progress')
            return RunResult(acquired=False, skipped_reason='in_progress')

        # a run left behind by lease loss must not release its successor's lease
        holder = f'{self.owner_id}:{run_token[:8]}'
        renewer = None
        acquired = False
        result = RunResult(acquired=False)
        started = time.monotonic()
        try:
            self.state = RunnerState.ACQUIRING
            acquired = self.lease.acquire(self.name, holder, self.schedule.lease_ttl_sec)
            if not acquired:
                logger.debug(f'{self.name} lease held elsewhere, skipping this cycle')
                self._bump('skipped_not_acquired')
                result.skipped_reason = 'not_acquired'
                return result

            result.acquired = True
            ctx = RunContext(job_name=self.name, cycle_id=new_cycle_id(), started_at=self.clock())

            def on_lost():
                logger.warning(f'{ctx.log_prefix} lease lost during run, releasing local guard')
                self._bump('lease_lost')
                ctx.mark_lease_lost()
                self._clear_guard(run_token)

            renewer = LeaseRenewer(self.lease, self.name, holder, self.schedule.lease_ttl_sec,
                                   self.schedule.renew_interval_sec, on_lost)
            renewer.start()

            self.state = RunnerState.RUNNING
            with self._status_lock:
                self.counters['runs'] += 1
                self.last_started_at = ctx.started_at
            try:
                result.summary = self.body(ctx)
                self._bump('succeeded')
                with self._status_lock:
                    self.last_summary = result.summary
                    self.last_error = None
            except Exception as e:
                logger.error(f'{ctx.log_prefix} job failed: {e}', exc_info=True)
                result.error = f'{type(e).__name__}: {e}'
                self._bump('failed')
                with self._status_lock:
                    self.last_error = result.error
            result.lease_lost = not ctx.lease_valid
            return result
        except Exception as e:
            logger.error(f'{self.name} cycle setup failed: {e}', exc_info=True)
            result.error = f'{type(e).__name__}: {e}'
            with self._status_lock:
                self.last_error = result.error
            return result
        finally:
            if renewer is not None:
                renewer.stop()
            if acquired:
                try:
                    self.lease.release(self.name, holder)
                except Exception as e:
                    logger.warning(f'{self.name} lease release failed: {e}')
            self._clear_guard(run_token)
            duration = time.monotonic() - started
            result.duration_sec = duration
            if acquired:
                with self._status_lock:
                    self.last_finished_at = self.clock()
                    self.last_duration_sec = duration
                if duration > self.schedule.duration_budget_sec:
                    logger.warning(f'{self.name} took {duration:.1f}s, over its '
                                   f'{self.schedule.duration_budget_sec}s budget')
                    self._bump('overruns')
            if self.state is not RunnerState.STOPPED:
                self.state = RunnerState.IDLE

    # -------- thread --------

    def start(self) -> None:
        """Start the timer thread.
        """
        if not self.schedule.enabled:
            logger.info(f'{self.name} disabled, not starting')
            return
        self.shutdown_event.clear()
        self.state = RunnerState.IDLE
        self.thread = threading.Thread(target=self._run_loop, daemon=True, name=f'job-{self.name}')
        self.thread.start()
        logger.info(f'{self.name} runner started (every {self.schedule.interval_sec}s, '
                    f'first run in {self.schedule.initial_delay_sec}s)')

    def stop(self, timeout: float = 10) -> None:
        """Signal shutdown and wait for the current cycle to finish.
        """
        self.shutdown_event.set()
        if self.thread is not None and self.thread.is_alive():
            self.thread.join(timeout=timeout)
            if self.thread.is_alive():
                logger.warning(f'{self.name} runner did not stop within {timeout}s')
        self.state = RunnerState.STOPPED
        logger.info(f'{self.name} runner stopped')

    def _run_loop(self) -> None:
        if self.shutdown_event.wait(timeout=self.schedule.initial_delay_sec):
            return
        while not self.shutdown_event.is_set():
            self.run_once()
            if self.shutdown_event.wait(timeout=self.schedule.interval_sec):
                break

    def is_alive(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def get_status(self) -> dict:
        """Health record for this job.
        """
        lease_owner = self._lease_owner()
        with self._status_lock:
            return {
                'name': self.name,
                'state': self.state.value,
                'enabled': self.schedule.enabled,
                'in_progress': self.in_progress,
                'thread_alive': self.is_alive(),
                'counters': dict(self.counters),
                'last_error': self.last_error,
                'last_summary': self.last_summary,
                'last_started_at': self.last_started_at,
                'last_finished_at': self.last_finished_at,
                'last_duration_sec': self.last_duration_sec,
                'lease_owner': lease_owner,
            }

    def _lease_owner(self) -> str | None:
        try:
            return self.lease.owner(self.name)
        except Exception as e:
            logger.debug(f'{self.name} lease owner lookup failed: {e}')
            return None
