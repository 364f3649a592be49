"""Job bodies and the default registry wiring them to job names.
"""
from jobkeeper.config import FOLLOWUP_DISPATCH, RETENTION_CLEANUP, STALE_CHECK
from jobkeeper.jobs.base import CompositeJob, JobBody
from jobkeeper.jobs.followup import FollowupDispatch
from jobkeeper.jobs.retention import RetentionCleanup
from jobkeeper.jobs.stale import AutoEscalation, InactivityCheck, MissedReplyRecovery
from jobkeeper.jobs.stale import StaleFlagCheck, StallDetection, stale_check_job

__all__ = [
    'JobBody', 'CompositeJob', 'FollowupDispatch', 'RetentionCleanup', 'AutoEscalation',
    'InactivityCheck', 'MissedReplyRecovery', 'StaleFlagCheck', 'StallDetection',
    'stale_check_job', 'default_jobs',
]


def default_jobs(store, settings=None, clock=None, sender=None, notifier=None, reply_checker=None,
                 datetime_parser=None, inactivity_handler=None, backoff=None,
                 claim_grace_sec: float = 120, batch_size: int = 50) -> dict[str, JobBody]:
    """Job name -> body for the three recurring jobs.
    """
    return {
        STALE_CHECK: stale_check_job(
            store, settings, clock, notifier=notifier, checker=reply_checker,
            inactivity_handler=inactivity_handler),
        RETENTION_CLEANUP: RetentionCleanup(store, settings, clock),
        FOLLOWUP_DISPATCH: FollowupDispatch(
            store, settings, clock, sender=sender, parser=datetime_parser, backoff=backoff,
            claim_grace_sec=claim_grace_sec, batch_size=batch_size),
    }
