"""Lease-guarded recurring maintenance jobs with at-most-once side effects.
"""
from jobkeeper.backoff import BackoffTracker
from jobkeeper.config import FOLLOWUP_DISPATCH, RETENTION_CLEANUP, STALE_CHECK
from jobkeeper.config import JobSchedule, KeeperConfig, load_config
from jobkeeper.dispatch import ClaimCommitDispatcher, CycleStats, DispatchOutcome
from jobkeeper.dispatch import reconcile_stuck_claims
from jobkeeper.exceptions import ConfigError, KeeperError, LockNotAcquired
from jobkeeper.keeper import Keeper
from jobkeeper.lease import MemoryLeaseLock, RedisLeaseLock, SqlLeaseLock, build_lease_lock
from jobkeeper.runner import JobRunner, RunContext, RunnerState, RunResult
from jobkeeper.settings import DEFAULT_SETTINGS, DatabaseSettings, StaticSettings
from jobkeeper.store import Absent, Appointment, AppointmentStatus, AppointmentStore
from jobkeeper.store import Claimed, DatabaseContext, Marker, Sent

__version__ = '0.1.0'

__all__ = [
    'Keeper',
    'KeeperConfig',
    'JobSchedule',
    'load_config',
    'STALE_CHECK',
    'RETENTION_CLEANUP',
    'FOLLOWUP_DISPATCH',
    'BackoffTracker',
    'ClaimCommitDispatcher',
    'CycleStats',
    'DispatchOutcome',
    'reconcile_stuck_claims',
    'KeeperError',
    'LockNotAcquired',
    'ConfigError',
    'SqlLeaseLock',
    'RedisLeaseLock',
    'MemoryLeaseLock',
    'build_lease_lock',
    'JobRunner',
    'RunContext',
    'RunResult',
    'RunnerState',
    'DEFAULT_SETTINGS',
    'StaticSettings',
    'DatabaseSettings',
    'Appointment',
    'AppointmentStatus',
    'AppointmentStore',
    'DatabaseContext',
    'Marker',
    'Absent',
    'Claimed',
    'Sent',
]
