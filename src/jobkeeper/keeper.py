import logging

import sqlalchemy as sa

from jobkeeper.backoff import BackoffTracker
from jobkeeper.config import KeeperConfig
from jobkeeper.jobs import default_jobs
from jobkeeper.lease import LeaseLock, MemoryLeaseLock, build_lease_lock
from jobkeeper.runner import JobRunner
from jobkeeper.schema import ensure_database_ready
from jobkeeper.settings import DatabaseSettings, Settings
from jobkeeper.store import AppointmentStore, DatabaseContext
from jobkeeper.utils import make_owner_id, retry_with_backoff, utcnow

logger = logging.getLogger(__name__)


class Keeper:
    """Process-level owner of the maintenance jobs.

    Construct once per process, then ``start()`` and ``stop()`` explicitly or
    use it as a context manager. Owns the engine, the lease backend and one
    runner thread per enabled job.

    With ``config=None`` the keeper runs standalone: in-memory leases, so only
    this process is guarded.
    """

    def __init__(
        self,
        config: KeeperConfig = None,
        engine: sa.Engine = None,
        lease: LeaseLock = None,
        settings: Settings = None,
        jobs: dict = None,
        clock: callable = utcnow,
        sender=None,
        notifier=None,
        reply_checker=None,
        datetime_parser=None,
        inactivity_handler=None,
    ):
        """Initialize keeper.

        Args:
            config: KeeperConfig (None runs standalone with in-memory leases)
            engine: Existing SQLAlchemy engine to reuse
            lease: Lease backend overriding the one built from config
            settings: Settings collaborator (defaults to the setting table)
            jobs: Job name -> body mapping overriding the default registry
            clock: Callable returning an aware UTC datetime
            sender: Follow-up email sender
            notifier: Stall and escalation notifier
            reply_checker: Callable(thread_id, trace_id) returning recovered reply count
            datetime_parser: Callable(text, reference) returning a datetime or None
            inactivity_handler: Callable(threshold_hours) returning flagged/unfrozen counts
        """
        self._coordination_enabled = config is not None
        self.config = (config or KeeperConfig(lease_backend='memory')).validate()
        self.owner_id = make_owner_id(self.config.node_name)
        self.clock = clock

        self.db = DatabaseContext(self.config, engine=engine)
        self._ensure_schema()
        self.store = AppointmentStore(self.db)
        self.settings = settings or DatabaseSettings(self.db)

        if lease is not None:
            self.lease = lease
        elif self._coordination_enabled:
            self.lease = build_lease_lock(self.config, self.db)
        else:
            self.lease = MemoryLeaseLock()

        self.parse_backoff = BackoffTracker()
        if jobs is None:
            jobs = default_jobs(
                self.store, self.settings, clock, sender=sender, notifier=notifier,
                reply_checker=reply_checker, datetime_parser=datetime_parser,
                inactivity_handler=inactivity_handler, backoff=self.parse_backoff,
                claim_grace_sec=self.config.claim_grace_sec, batch_size=self.config.batch_size)

        self.runners = {
            name: JobRunner(name, body, self.lease, self.owner_id, self.config.schedule(name), clock=clock)
            for name, body in jobs.items()
        }
        self._started = False

    @retry_with_backoff(max_attempts=3, base_delay=1.0, operation_name='ensure_schema')
    def _ensure_schema(self) -> None:
        ensure_database_ready(self.db.engine, self.config.appname)

    def start(self) -> 'Keeper':
        """Start one runner thread per enabled job.
        """
        if self._started:
            logger.debug(f'Keeper {self.owner_id} already started')
            return self
        mode = 'coordination' if self._coordination_enabled else 'standalone'
        logger.info(f'Starting keeper {self.owner_id} in {mode} mode ({self.config.lease_backend} leases)')
        for runner in self.runners.values():
            runner.start()
        self._started = True
        return self

    def stop(self, timeout: float = 10) -> None:
        """Signal every runner, wait for in-flight cycles, release resources.
        """
        for runner in self.runners.values():
            runner.shutdown_event.set()
        for runner in self.runners.values():
            runner.stop(timeout=timeout)
        self._started = False
        self.db.dispose()
        logger.info(f'Keeper {self.owner_id} stopped')

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_ty, exc_val, tb):
        if exc_ty:
            logger.error(exc_val)
        self.stop()

    def run_now(self, name: str):
        """Run one cycle of a job synchronously (admin trigger and tests).
        """
        return self.runners[name].run_once()

    def get_status(self) -> dict:
        """Current state of every job runner for health endpoints.
        """
        return {
            'owner_id': self.owner_id,
            'mode': 'coordination' if self._coordination_enabled else 'standalone',
            'lease_backend': self.config.lease_backend,
            'started': self._started,
            'backoff_entries': len(self.parse_backoff),
            'jobs': {name: runner.get_status() for name, runner in self.runners.items()},
        }

    def am_i_healthy(self) -> bool:
        """Check if the keeper is healthy.

        Returns
            True when the store answers and every started, enabled runner thread is alive
        """
        if not self.db.ping():
            return False
        if not self._started:
            return True
        return all(r.is_alive() for r in self.runners.values() if r.schedule.enabled)
