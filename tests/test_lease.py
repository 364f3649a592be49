"""Tests for lease locks across the SQL, Redis and in-memory backends.

USE THIS FILE FOR:
- Exclusive acquisition and expiry
- Owner-only renew and release
- Fail-closed behavior when the backing store is unreachable
- Backend selection from configuration
"""
import threading
from types import SimpleNamespace
from unittest import mock

import pytest
import redis
from asserts import assert_equal, assert_false, assert_true
from fixtures import *  # noqa: F401, F403
from sqlalchemy.exc import OperationalError

from jobkeeper.config import KeeperConfig
from jobkeeper.exceptions import ConfigError, LockNotAcquired
from jobkeeper.lease import MemoryLeaseLock, RedisLeaseLock, SqlLeaseLock, build_lease_lock
from jobkeeper.schema import get_tables
from jobkeeper.store import DatabaseContext


def sql_lease(engine, clock=None) -> SqlLeaseLock:
    db = DatabaseContext(KeeperConfig(), engine=engine)
    return SqlLeaseLock(db, clock=clock or FakeClock())


class TestSqlLeaseLock:
    """Lease rows in the relational store."""

    def test_acquire_is_exclusive(self, engine):
        """Verify a held lease cannot be taken by a second owner."""
        lease = sql_lease(engine)
        assert_true(lease.acquire('retention-cleanup', 'node-a', 30))
        assert_false(lease.acquire('retention-cleanup', 'node-b', 30))
        assert_equal(lease.owner('retention-cleanup'), 'node-a')

    def test_expired_lease_taken_over(self, engine):
        """Verify a lease not renewed within its ttl goes to the next caller."""
        clock = FakeClock()
        lease = sql_lease(engine, clock)
        assert_true(lease.acquire('retention-cleanup', 'node-a', 30))

        clock.advance(seconds=29)
        assert_false(lease.acquire('retention-cleanup', 'node-b', 30))

        clock.advance(seconds=2)
        assert_true(lease.acquire('retention-cleanup', 'node-b', 30))
        assert_equal(lease.owner('retention-cleanup'), 'node-b')

    def test_renew_extends_only_for_owner(self, engine):
        """Verify renew by the holder extends the lease and renew by others fails."""
        clock = FakeClock()
        lease = sql_lease(engine, clock)
        lease.acquire('stale-check', 'node-a', 30)

        clock.advance(seconds=20)
        assert_false(lease.renew('stale-check', 'node-b', 30))
        assert_true(lease.renew('stale-check', 'node-a', 30))

        clock.advance(seconds=20)
        assert_false(lease.acquire('stale-check', 'node-b', 30), 'Renewed lease should still be held')

    def test_renew_after_expiry_fails(self, engine):
        """Verify an expired lease cannot be renewed, even by its last owner."""
        clock = FakeClock()
        lease = sql_lease(engine, clock)
        lease.acquire('stale-check', 'node-a', 30)
        clock.advance(seconds=31)
        assert_false(lease.renew('stale-check', 'node-a', 30))

    def test_release_by_non_owner_is_noop(self, engine):
        """Verify release only deletes the caller's own lease."""
        lease = sql_lease(engine)
        lease.acquire('stale-check', 'node-a', 30)
        lease.release('stale-check', 'node-b')
        assert_equal(lease.owner('stale-check'), 'node-a')

        lease.release('stale-check', 'node-a')
        assert lease.owner('stale-check') is None
        assert_true(lease.acquire('stale-check', 'node-b', 30))

    def test_concurrent_acquire_single_winner(self, engine):
        """Verify exactly one of many simultaneous acquirers wins."""
        lease = sql_lease(engine)
        barrier = threading.Barrier(8)
        results = {}

        def contend(owner):
            barrier.wait()
            results[owner] = lease.acquire('followup-dispatch', owner, 30)

        threads = [threading.Thread(target=contend, args=(f'node-{i}',)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        winners = [owner for owner, won in results.items() if won]
        assert_equal(len(results), 8)
        assert_equal(len(winners), 1, f'Expected one winner, got {winners}')
        assert_equal(lease.owner('followup-dispatch'), winners[0])

    def test_store_unreachable_fails_closed(self):
        """Verify database errors turn into not-acquired and lost, never into a held lease."""
        def broken(*args, **kwargs):
            raise OperationalError('UPDATE keeper_lease', {}, ConnectionRefusedError('store down'))

        db = SimpleNamespace(t=get_tables('keeper_'), execute=broken, query=broken)
        lease = SqlLeaseLock(db, clock=FakeClock())

        assert_false(lease.acquire('stale-check', 'node-a', 30))
        assert_false(lease.renew('stale-check', 'node-a', 30))
        lease.release('stale-check', 'node-a')
        assert lease.owner('stale-check') is None

    def test_hold_raises_when_held(self, engine):
        """Verify the hold context manager raises LockNotAcquired on contention."""
        lease = sql_lease(engine)
        with lease.hold('stale-check', 'node-a', 30):
            with pytest.raises(LockNotAcquired):
                with lease.hold('stale-check', 'node-b', 30):
                    pass
        assert lease.owner('stale-check') is None


class TestRedisLeaseLock:
    """Lease keys in Redis, exercised against a mocked client."""

    def make(self):
        client = mock.MagicMock()
        renew_script = mock.MagicMock(return_value=1)
        release_script = mock.MagicMock(return_value=1)
        client.register_script.side_effect = [renew_script, release_script]
        return RedisLeaseLock(client, prefix='keeper:'), client, renew_script, release_script

    def test_acquire_uses_set_nx_px(self):
        """Verify acquire issues SET NX with a millisecond ttl on the prefixed key."""
        lease, client, _, _ = self.make()
        client.set.return_value = True
        assert_true(lease.acquire('stale-check', 'node-a', 300))
        client.set.assert_called_once_with('keeper:stale-check', 'node-a', nx=True, px=300000)

    def test_acquire_contended(self):
        """Verify a nil reply from SET NX means not acquired."""
        lease, client, _, _ = self.make()
        client.set.return_value = None
        assert_false(lease.acquire('stale-check', 'node-b', 300))

    def test_renew_and_release_compare_owner(self):
        """Verify renew and release go through the owner-checking scripts."""
        lease, _, renew_script, release_script = self.make()
        assert_true(lease.renew('stale-check', 'node-a', 60))
        renew_script.assert_called_once_with(keys=['keeper:stale-check'], args=['node-a', 60000])

        renew_script.return_value = 0
        assert_false(lease.renew('stale-check', 'node-b', 60))

        lease.release('stale-check', 'node-a')
        release_script.assert_called_once_with(keys=['keeper:stale-check'], args=['node-a'])

    def test_unreachable_fails_closed(self):
        """Verify connection errors give not-acquired and lost instead of raising."""
        lease, client, renew_script, release_script = self.make()
        client.set.side_effect = redis.ConnectionError('connection refused')
        renew_script.side_effect = redis.ConnectionError('connection refused')
        release_script.side_effect = redis.TimeoutError('timed out')

        assert_false(lease.acquire('stale-check', 'node-a', 300))
        assert_false(lease.renew('stale-check', 'node-a', 300))
        lease.release('stale-check', 'node-a')


class TestMemoryLeaseLock:
    """Process-local leases."""

    def test_expiry_and_ownership(self):
        """Verify memory leases expire on the injected clock and honor ownership."""
        clock = FakeMonotonic()
        lease = MemoryLeaseLock(clock=clock)
        assert_true(lease.acquire('stale-check', 'a', 10))
        assert_false(lease.acquire('stale-check', 'b', 10))
        assert_false(lease.renew('stale-check', 'b', 10))

        clock.advance(11)
        assert_false(lease.renew('stale-check', 'a', 10))
        assert_true(lease.acquire('stale-check', 'b', 10))

        lease.release('stale-check', 'a')
        assert_equal(lease.owner('stale-check'), 'b')


class TestBuildLeaseLock:
    """Backend selection."""

    def test_backends(self, engine):
        """Verify each configured backend yields the matching lease class."""
        db = DatabaseContext(KeeperConfig(), engine=engine)
        assert isinstance(build_lease_lock(KeeperConfig(lease_backend='sql'), db), SqlLeaseLock)
        assert isinstance(build_lease_lock(KeeperConfig(lease_backend='memory')), MemoryLeaseLock)
        assert isinstance(build_lease_lock(KeeperConfig(lease_backend='redis')), RedisLeaseLock)

    def test_sql_without_database(self):
        """Verify the SQL backend refuses to build without a database context."""
        with pytest.raises(ConfigError):
            build_lease_lock(KeeperConfig(lease_backend='sql'))
