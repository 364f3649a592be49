"""Tests for clock, id and decorator helpers.
"""
import datetime
from unittest import mock

import pytest
from asserts import assert_equal, assert_true

from jobkeeper.utils import as_utc, make_owner_id, new_cycle_id
from jobkeeper.utils import retry_with_backoff, utcnow


class TestTimezones:

    def test_utcnow_is_aware(self):
        """Verify the default clock returns aware UTC datetimes."""
        assert_equal(utcnow().utcoffset(), datetime.timedelta(0))

    def test_as_utc(self):
        """Verify naive values are read as UTC and offsets are converted."""
        naive = datetime.datetime(2026, 3, 2, 12, 0)
        assert_equal(as_utc(naive), naive.replace(tzinfo=datetime.timezone.utc))
        eastern = datetime.datetime(2026, 3, 2, 7, 0, tzinfo=datetime.timezone(datetime.timedelta(hours=-5)))
        assert_equal(as_utc(eastern).hour, 12)
        assert as_utc(None) is None


class TestIds:

    def test_cycle_ids_are_short_base36(self):
        """Verify cycle ids are short lowercase alphanumerics."""
        cycle_id = new_cycle_id()
        assert_true(cycle_id.isalnum())
        assert_equal(cycle_id, cycle_id.lower())
        assert len(cycle_id) <= 10

    def test_owner_ids_unique_per_incarnation(self):
        """Verify two owner ids from the same host and process differ."""
        first, second = make_owner_id('node'), make_owner_id('node')
        assert first.startswith('node-')
        assert first != second


class TestRetryWithBackoff:

    def test_retries_then_succeeds(self):
        """Verify transient failures are retried with doubling delays."""
        attempts = []

        @retry_with_backoff(max_attempts=3, base_delay=0.5)
        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError('database starting up')
            return 'ready'

        with mock.patch('jobkeeper.utils.time.sleep') as sleep:
            assert_equal(flaky(), 'ready')
        assert_equal([c.args[0] for c in sleep.call_args_list], [0.5, 1.0])

    def test_gives_up(self):
        """Verify the last failure is raised after max attempts."""
        @retry_with_backoff(max_attempts=2, base_delay=0)
        def broken():
            raise ConnectionError('still down')

        with pytest.raises(ConnectionError):
            broken()
