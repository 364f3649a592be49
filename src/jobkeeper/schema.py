import functools
import logging

import sqlalchemy as sa
from sqlalchemy import Engine

logger = logging.getLogger(__name__)

MARKERS = ('meeting_link_check', 'feedback_form', 'feedback_reminder', 'session_reminder')

TABLE_KEYS = ['Appointment', 'PendingEmail', 'ProcessedMessage', 'Lease', 'Setting']


def get_table_names(appname: str = 'keeper_') -> dict[str, str]:
    """Get table names based on appname prefix.

    Args
        appname: Application name prefix for tables

    Returns
        Dictionary containing table names
    """
    return get_table_names_for_appname(appname)


def get_table_names_for_appname(appname: str) -> dict[str, str]:
    """Get table names for a specific appname prefix.
    """
    return {
        'Appointment': f'{appname}appointment',
        'PendingEmail': f'{appname}pending_email',
        'ProcessedMessage': f'{appname}processed_message',
        'Lease': f'{appname}lease',
        'Setting': f'{appname}setting',
    }


def _marker_columns() -> list[sa.Column]:
    """Two columns per follow-up marker: when, and whose claim (NULL once sent).
    """
    columns = []
    for marker in MARKERS:
        columns.append(sa.Column(f'{marker}_at', sa.DateTime(timezone=True)))
        columns.append(sa.Column(f'{marker}_claim', sa.String(64)))
    return columns


@functools.cache
def get_tables(appname: str = 'keeper_') -> dict[str, sa.Table]:
    """SQLAlchemy Core tables for an appname prefix, one MetaData per prefix.
    """
    names = get_table_names(appname)
    metadata = sa.MetaData()

    appointment = sa.Table(
        names['Appointment'], metadata,
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('status', sa.String(32), nullable=False, default='pending'),
        sa.Column('user_name', sa.String(255)),
        sa.Column('user_email', sa.String(255), nullable=False),
        sa.Column('therapist_name', sa.String(255), nullable=False),
        sa.Column('therapist_email', sa.String(255)),
        sa.Column('tracking_code', sa.String(64)),
        sa.Column('gmail_thread_id', sa.String(255)),
        sa.Column('therapist_gmail_thread_id', sa.String(255)),
        sa.Column('notes', sa.Text),
        sa.Column('confirmed_at', sa.DateTime(timezone=True)),
        sa.Column('confirmed_datetime', sa.String(255)),
        sa.Column('confirmed_datetime_parsed', sa.DateTime(timezone=True)),
        sa.Column('last_activity_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_stale', sa.Boolean, nullable=False, default=False),
        sa.Column('last_tool_executed_at', sa.DateTime(timezone=True)),
        sa.Column('last_tool_failure_reason', sa.Text),
        sa.Column('conversation_stall_alert_at', sa.DateTime(timezone=True)),
        sa.Column('conversation_stall_acknowledged', sa.Boolean, nullable=False, default=False),
        sa.Column('human_control_enabled', sa.Boolean, nullable=False, default=False),
        sa.Column('human_control_taken_by', sa.String(255)),
        sa.Column('human_control_taken_at', sa.DateTime(timezone=True)),
        sa.Column('human_control_reason', sa.Text),
        sa.Column('auto_escalated_at', sa.DateTime(timezone=True)),
        *_marker_columns(),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    sa.Index(f'idx_{names["Appointment"]}_status_activity', appointment.c.status, appointment.c.last_activity_at)
    sa.Index(f'idx_{names["Appointment"]}_status_updated', appointment.c.status, appointment.c.updated_at)

    pending_email = sa.Table(
        names['PendingEmail'], metadata,
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('appointment_id', sa.String(64), nullable=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('last_retry_at', sa.DateTime(timezone=True)),
    )
    sa.Index(f'idx_{names["PendingEmail"]}_appointment', pending_email.c.appointment_id)

    processed_message = sa.Table(
        names['ProcessedMessage'], metadata,
        sa.Column('message_id', sa.String(255), primary_key=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
    )

    lease = sa.Table(
        names['Lease'], metadata,
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('owner', sa.String(255), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )

    setting = sa.Table(
        names['Setting'], metadata,
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('value', sa.Text, nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    return {
        'Appointment': appointment,
        'PendingEmail': pending_email,
        'ProcessedMessage': processed_message,
        'Lease': lease,
        'Setting': setting,
    }


def verify_tables_exist(engine: Engine, appname: str = 'keeper_') -> dict[str, bool]:
    """Verify which required tables exist in the database.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables

    Returns
        Dictionary mapping table keys to existence status (True if exists, False otherwise)
    """
    tables = get_table_names(appname)
    inspector = sa.inspect(engine)
    return {key: inspector.has_table(tables[key]) for key in TABLE_KEYS}


def ensure_database_ready(engine: Engine, appname: str = 'keeper_') -> None:
    """Ensure database has all required tables.

    Safe to call repeatedly from every process at startup; existing tables
    are left untouched.

    Args:
        engine: SQLAlchemy engine
        appname: Application name prefix for tables
    """
    logger.debug('Verifying database structure')

    table_status = verify_tables_exist(engine, appname)
    missing_tables = [k for k in TABLE_KEYS if not table_status.get(k, False)]
    if missing_tables:
        logger.info(f'Creating missing tables: {missing_tables}')

    tables = get_tables(appname)
    metadata = tables['Appointment'].metadata
    try:
        metadata.create_all(engine, checkfirst=True)
    except Exception as e:
        logger.error(f'Failed to create tables: {e}')
        raise

    logger.info('Database structure verified and ready')
