"""Lease and claim races against a real PostgreSQL 17 server.

Requires Docker; skipped otherwise.
"""
import threading

import pytest
from asserts import assert_equal
from fixtures import *  # noqa: F401, F403

from jobkeeper.config import FOLLOWUP_DISPATCH, KeeperConfig
from jobkeeper.dispatch import ClaimCommitDispatcher
from jobkeeper.lease import SqlLeaseLock
from jobkeeper.store import AppointmentStatus, DatabaseContext, Marker, Sent

pytestmark = pytest.mark.postgres


def test_single_lease_winner(postgres):
    """Verify exactly one of many concurrent acquirers holds the lease."""
    lease = SqlLeaseLock(DatabaseContext(KeeperConfig(), engine=postgres), clock=FakeClock())
    barrier = threading.Barrier(10)
    results = {}

    def contend(owner):
        barrier.wait()
        results[owner] = lease.acquire(FOLLOWUP_DISPATCH, owner, 30)

    threads = [threading.Thread(target=contend, args=(f'node-{i}',)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert_equal(sum(results.values()), 1)


def test_single_side_effect_per_marker(postgres):
    """Verify concurrent dispatchers act once per appointment and marker."""
    store = make_store(postgres)
    ids = [insert_appointment(store, status='confirmed') for _ in range(5)]
    acts = []
    lock = threading.Lock()
    barrier = threading.Barrier(4)

    def worker():
        dispatcher = ClaimCommitDispatcher(make_store(postgres), Marker.SESSION_REMINDER,
                                           [AppointmentStatus.CONFIRMED], FakeClock())
        barrier.wait()
        for apt in ids:
            def act(apt=apt):
                with lock:
                    acts.append(apt)
                return True
            dispatcher.dispatch(apt, act)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)

    assert_equal(sorted(acts), sorted(ids))
    for apt in ids:
        assert isinstance(store.get(apt).marker(Marker.SESSION_REMINDER), Sent)
