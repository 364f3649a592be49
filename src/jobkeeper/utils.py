"""Small helpers shared across the keeper: clocks, ids and decorators.
"""
import datetime
import functools
import logging
import os
import socket
import time
import uuid

logger = logging.getLogger(__name__)

EPOCH = datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)


def utcnow() -> datetime.datetime:
    """Timezone-aware current time in UTC.
    """
    return datetime.datetime.now(datetime.timezone.utc)


def as_utc(dt: datetime.datetime | None) -> datetime.datetime | None:
    """Normalize a value read back from the store to an aware UTC datetime.

    SQLite hands back naive values; every timestamp written by the keeper is UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=datetime.timezone.utc)
    return dt.astimezone(datetime.timezone.utc)


def hours(n: float) -> datetime.timedelta:
    return datetime.timedelta(hours=n)


def days(n: float) -> datetime.timedelta:
    return datetime.timedelta(days=n)


def new_cycle_id() -> str:
    """Short base36 id stamped on every log line of one job cycle.
    """
    value = int(time.time() * 1000)
    digits = '0123456789abcdefghijklmnopqrstuvwxyz'
    out = ''
    while value:
        value, rem = divmod(value, 36)
        out = digits[rem] + out
    return out or '0'


def make_owner_id(node_name: str = None) -> str:
    """Lease owner identity, unique per process incarnation.
    """
    node = node_name or socket.gethostname()
    return f'{node}-{os.getpid()}-{uuid.uuid4().hex[:8]}'


def retry_with_backoff(max_attempts: int = 5, base_delay: float = 1.0, operation_name: str = None):
    """Decorator to retry function with exponential backoff on database errors.

    Only used on startup paths (schema creation); job bodies never retry
    in-cycle, the next cycle is the retry.

    Args:
        max_attempts: Maximum retry attempts
        base_delay: Base delay in seconds (doubles each retry)
        operation_name: Name for logging (defaults to function name)

    Returns
        Decorated function
    """
    def decorator(func: callable):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            name = operation_name or func.__name__
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if attempt == max_attempts:
                        logger.error(f'{name} failed after {max_attempts} attempts: {e}')
                        raise
                    delay = base_delay * (2 ** (attempt - 1))
                    logger.warning(f'{name} attempt {attempt}/{max_attempts} failed: {e}, retrying in {delay:.1f}s')
                    time.sleep(delay)
        return wrapper
    return decorator
