"""Operator-tunable thresholds, read fresh at the start of each job cycle.
"""
import json
import logging

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from jobkeeper.store import DatabaseContext
from jobkeeper.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'stale.markStaleHours': 48,
    'notifications.inactivityAlertHours': 72,
    'notifications.stallDetectionHours': 24,
    'notifications.email.feedbackReminder': True,
    'postBooking.sessionReminderHoursBefore': 4,
    'postBooking.feedbackReminderDelayHours': 48,
    'postBooking.meetingLinkCheckHoursAfterConfirm': 24,
    'postBooking.meetingLinkCheckHoursBeforeSession': 4,
    'postBooking.feedbackFormHoursAfterSession': 1,
}


def coerce(key: str, value, default=None):
    """Coerce a raw value to the type of the key's default.

    >>> coerce('notifications.stallDetectionHours', '12')
    12
    >>> coerce('notifications.email.feedbackReminder', 'false')
    False
    >>> coerce('postBooking.feedbackReminderDelayHours', 'soon')
    48
    """
    if default is None:
        default = DEFAULT_SETTINGS.get(key)
    if value is None or default is None:
        return default if value is None else value
    try:
        if isinstance(default, bool):
            if isinstance(value, str):
                return value.strip().lower() in {'true', '1', 'yes', 'on'}
            return bool(value)
        if isinstance(default, int):
            return int(float(value))
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError):
        logger.warning(f'Setting {key}={value!r} is not a valid {type(default).__name__}, using {default!r}')
        return default
    return value


class Settings:
    """Settings collaborator: ``get(key, default=None)``.
    """

    def get(self, key: str, default=None):
        return coerce(key, self._raw(key), default)

    def _raw(self, key: str):
        raise NotImplementedError


class StaticSettings(Settings):
    """Settings from a plain dict, falling back to the defaults.
    """

    def __init__(self, values: dict = None):
        self.values = dict(values or {})

    def _raw(self, key: str):
        return self.values.get(key)

    def set(self, key: str, value) -> None:
        self.values[key] = value


class DatabaseSettings(Settings):
    """Settings stored as JSON text in the setting table.
    """

    def __init__(self, db: DatabaseContext):
        self.db = db
        self.table = db.t['Setting']

    def _raw(self, key: str):
        t = self.table
        try:
            rows = self.db.query(sa.select(t.c.value).where(t.c.key == key))
        except SQLAlchemyError as e:
            logger.warning(f'Failed to read setting {key}, using default: {e}')
            return None
        if not rows:
            return None
        try:
            return json.loads(rows[0][0])
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f'Failed to parse setting {key}: {e}')
            return None

    def set(self, key: str, value) -> None:
        """Upsert one setting (admin surface and tests).
        """
        t = self.table
        payload = json.dumps(value)
        now = utcnow()
        updated = self.db.execute(sa.update(t).where(t.c.key == key).values(value=payload, updated_at=now))
        if updated.rowcount == 0:
            self.db.execute(sa.insert(t).values(key=key, value=payload, updated_at=now))


if __name__ == '__main__':
    __import__('doctest').testmod()
