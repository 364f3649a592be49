"""Tests for table definitions and database initialization.
"""
from asserts import assert_equal, assert_true
from sqlalchemy import create_engine, inspect

from jobkeeper import schema
from jobkeeper.store import Marker


class TestTableNames:

    def test_prefixed_names(self):
        """Verify every table carries the appname prefix."""
        names = schema.get_table_names('sched_')
        assert_equal(set(names), set(schema.TABLE_KEYS))
        assert all(name.startswith('sched_') for name in names.values())

    def test_tables_cached_per_prefix(self):
        """Verify table objects are built once per prefix."""
        assert schema.get_tables('keeper_') is schema.get_tables('keeper_')
        assert schema.get_tables('keeper_') is not schema.get_tables('other_')

    def test_marker_columns(self):
        """Verify each marker has a timestamp and a claim column."""
        columns = schema.get_tables('keeper_')['Appointment'].c
        for marker in Marker:
            assert marker.at_column in columns
            assert marker.claim_column in columns
        assert_equal(sorted(m.value for m in Marker), sorted(schema.MARKERS))


class TestEnsureDatabaseReady:

    def test_creates_missing_tables(self, tmp_path):
        """Verify a fresh database gets every table."""
        engine = create_engine(f'sqlite:///{tmp_path / "fresh.db"}')
        assert_equal(set(schema.verify_tables_exist(engine).values()), {False})

        schema.ensure_database_ready(engine)

        assert_true(all(schema.verify_tables_exist(engine).values()))
        engine.dispose()

    def test_idempotent(self, engine):
        """Verify repeated initialization keeps existing tables and rows."""
        schema.ensure_database_ready(engine)
        schema.ensure_database_ready(engine)
        tables = inspect(engine).get_table_names()
        for name in schema.get_table_names('keeper_').values():
            assert name in tables

    def test_separate_prefixes_coexist(self, engine):
        """Verify two prefixes can share one database."""
        schema.ensure_database_ready(engine, 'other_')
        assert_true(all(schema.verify_tables_exist(engine, 'other_').values()))
        assert_true(all(schema.verify_tables_exist(engine, 'keeper_').values()))
