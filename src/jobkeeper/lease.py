"""Lease locks: time-bounded, owner-tagged mutual exclusion for recurring jobs.

Three backends share one narrow interface (``acquire``, ``renew``,
``release``, ``owner``). All of them fail closed: when the backing store
cannot be reached, ``acquire`` and ``renew`` return False and the job skips
the cycle rather than running unguarded.
"""
import contextlib
import datetime
import logging
import threading
import time

import redis
import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from jobkeeper.config import KeeperConfig
from jobkeeper.exceptions import ConfigError, LockNotAcquired
from jobkeeper.store import DatabaseContext
from jobkeeper.utils import utcnow

logger = logging.getLogger(__name__)

__all__ = ['LeaseLock', 'SqlLeaseLock', 'RedisLeaseLock', 'MemoryLeaseLock', 'build_lease_lock']


class LeaseLock:
    """Base lease interface.
    """

    def acquire(self, key: str, owner_id: str, ttl_sec: float) -> bool:
        raise NotImplementedError

    def renew(self, key: str, owner_id: str, ttl_sec: float) -> bool:
        raise NotImplementedError

    def release(self, key: str, owner_id: str) -> None:
        raise NotImplementedError

    def owner(self, key: str) -> str | None:
        raise NotImplementedError

    @contextlib.contextmanager
    def hold(self, key: str, owner_id: str, ttl_sec: float):
        """Context manager for one-shot lease acquisition.

        Args:
            key: Lease key
            owner_id: Identity of the caller
            ttl_sec: Lease lifetime in seconds

        Raises
            LockNotAcquired: If the lease is held elsewhere or the store is unreachable
        """
        if not self.acquire(key, owner_id, ttl_sec):
            raise LockNotAcquired(f'Lease {key} is held by another owner')
        try:
            yield
        finally:
            self.release(key, owner_id)


# ============================================================
# SQL BACKEND
# ============================================================

class SqlLeaseLock(LeaseLock):
    """Lease rows in the shared relational store.

    Acquire first tries to take over an expired row, then inserts; a primary
    key conflict on insert means someone else holds it.
    """

    def __init__(self, db: DatabaseContext, clock: callable = utcnow):
        self.db = db
        self.clock = clock
        self.table = db.t['Lease']

    def acquire(self, key: str, owner_id: str, ttl_sec: float) -> bool:
        now = self.clock()
        expires_at = now + datetime.timedelta(seconds=ttl_sec)
        t = self.table
        try:
            result = self.db.execute(
                sa.update(t)
                .where(t.c.key == key, t.c.expires_at <= now)
                .values(owner=owner_id, acquired_at=now, expires_at=expires_at))
            if result.rowcount > 0:
                logger.debug(f'Lease {key} taken over from expired holder by {owner_id}')
                return True
            try:
                self.db.execute(sa.insert(t).values(
                    key=key, owner=owner_id, acquired_at=now, expires_at=expires_at))
            except IntegrityError:
                logger.debug(f'Lease {key} already held')
                return False
            logger.debug(f'Lease {key} acquired by {owner_id}')
            return True
        except SQLAlchemyError as e:
            logger.warning(f'Lease acquire for {key} failed, treating as not acquired: {e}')
            return False

    def renew(self, key: str, owner_id: str, ttl_sec: float) -> bool:
        now = self.clock()
        t = self.table
        try:
            result = self.db.execute(
                sa.update(t)
                .where(t.c.key == key, t.c.owner == owner_id, t.c.expires_at > now)
                .values(expires_at=now + datetime.timedelta(seconds=ttl_sec)))
        except SQLAlchemyError as e:
            logger.warning(f'Lease renew for {key} failed, treating as lost: {e}')
            return False
        return result.rowcount > 0

    def release(self, key: str, owner_id: str) -> None:
        t = self.table
        try:
            self.db.execute(sa.delete(t).where(t.c.key == key, t.c.owner == owner_id))
            logger.debug(f'Lease {key} released by {owner_id}')
        except SQLAlchemyError as e:
            logger.warning(f'Lease release for {key} failed: {e}')

    def owner(self, key: str) -> str | None:
        t = self.table
        try:
            rows = self.db.query(sa.select(t.c.owner).where(t.c.key == key, t.c.expires_at > self.clock()))
        except SQLAlchemyError as e:
            logger.warning(f'Lease owner lookup for {key} failed: {e}')
            return None
        return rows[0][0] if rows else None


# ============================================================
# REDIS BACKEND
# ============================================================

RENEW_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('PEXPIRE', KEYS[1], ARGV[2])
else
    return 0
end
"""

RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


class RedisLeaseLock(LeaseLock):
    """Lease keys in Redis with ``SET NX PX`` and Lua compare-and-swap scripts.
    """

    def __init__(self, client: 'redis.Redis', prefix: str = ''):
        self.client = client
        self.prefix = prefix
        self._renew = client.register_script(RENEW_SCRIPT)
        self._release = client.register_script(RELEASE_SCRIPT)

    @classmethod
    def from_url(cls, url: str, prefix: str = '') -> 'RedisLeaseLock':
        client = redis.Redis.from_url(url, decode_responses=True, socket_timeout=5, socket_connect_timeout=5)
        return cls(client, prefix)

    def _key(self, key: str) -> str:
        return f'{self.prefix}{key}'

    def acquire(self, key: str, owner_id: str, ttl_sec: float) -> bool:
        try:
            acquired = self.client.set(self._key(key), owner_id, nx=True, px=int(ttl_sec * 1000))
        except redis.RedisError as e:
            logger.warning(f'Lease acquire for {key} failed, treating as not acquired: {e}')
            return False
        return bool(acquired)

    def renew(self, key: str, owner_id: str, ttl_sec: float) -> bool:
        try:
            result = self._renew(keys=[self._key(key)], args=[owner_id, int(ttl_sec * 1000)])
        except redis.RedisError as e:
            logger.warning(f'Lease renew for {key} failed, treating as lost: {e}')
            return False
        return result == 1

    def release(self, key: str, owner_id: str) -> None:
        try:
            self._release(keys=[self._key(key)], args=[owner_id])
        except redis.RedisError as e:
            logger.warning(f'Lease release for {key} failed: {e}')

    def owner(self, key: str) -> str | None:
        try:
            return self.client.get(self._key(key))
        except redis.RedisError as e:
            logger.warning(f'Lease owner lookup for {key} failed: {e}')
            return None


# ============================================================
# IN-MEMORY BACKEND
# ============================================================

class MemoryLeaseLock(LeaseLock):
    """Process-local leases for standalone mode and tests.
    """

    def __init__(self, clock: callable = time.monotonic):
        self.clock = clock
        self._leases = {}
        self._lock = threading.Lock()

    def acquire(self, key: str, owner_id: str, ttl_sec: float) -> bool:
        now = self.clock()
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[1] > now:
                return False
            self._leases[key] = (owner_id, now + ttl_sec)
            return True

    def renew(self, key: str, owner_id: str, ttl_sec: float) -> bool:
        now = self.clock()
        with self._lock:
            current = self._leases.get(key)
            if current is None or current[0] != owner_id or current[1] <= now:
                return False
            self._leases[key] = (owner_id, now + ttl_sec)
            return True

    def release(self, key: str, owner_id: str) -> None:
        with self._lock:
            current = self._leases.get(key)
            if current is not None and current[0] == owner_id:
                del self._leases[key]

    def owner(self, key: str) -> str | None:
        with self._lock:
            current = self._leases.get(key)
            if current is None or current[1] <= self.clock():
                return None
            return current[0]


def build_lease_lock(config: KeeperConfig, db: DatabaseContext = None) -> LeaseLock:
    """Lease backend selected by ``config.lease_backend``.
    """
    if config.lease_backend == 'memory':
        return MemoryLeaseLock()
    if config.lease_backend == 'redis':
        return RedisLeaseLock.from_url(config.redis_url, prefix=config.lease_key_prefix)
    if config.lease_backend == 'sql':
        if db is None:
            raise ConfigError('SQL lease backend requires a database context')
        return SqlLeaseLock(db)
    raise ConfigError(f'Unknown lease backend: {config.lease_backend}')
