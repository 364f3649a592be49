import os
from dataclasses import dataclass, field, replace
from types import SimpleNamespace

from jobkeeper.exceptions import ConfigError

STALE_CHECK = 'stale-check'
RETENTION_CLEANUP = 'retention-cleanup'
FOLLOWUP_DISPATCH = 'followup-dispatch'


@dataclass
class JobSchedule:
    """Timing for one recurring job.

    All timing parameters are in seconds. The renewal interval must stay
    below the lease ttl or the lease lapses between renewals.
    """
    interval_sec: float = 3600
    lease_ttl_sec: float = 300
    renew_interval_sec: float = None
    duration_budget_sec: float = 60
    initial_delay_sec: float = 0
    enabled: bool = True

    def __post_init__(self):
        if self.renew_interval_sec is None:
            self.renew_interval_sec = self.lease_ttl_sec / 2

    def validate(self, name: str = 'job') -> 'JobSchedule':
        if self.interval_sec <= 0:
            raise ConfigError(f'{name}: interval_sec must be positive, got {self.interval_sec}')
        if self.lease_ttl_sec <= 0:
            raise ConfigError(f'{name}: lease_ttl_sec must be positive, got {self.lease_ttl_sec}')
        if not 0 < self.renew_interval_sec < self.lease_ttl_sec:
            raise ConfigError(
                f'{name}: renew_interval_sec ({self.renew_interval_sec}) must be between 0 and '
                f'lease_ttl_sec ({self.lease_ttl_sec})')
        return self


def default_schedules() -> dict[str, JobSchedule]:
    return {
        STALE_CHECK: JobSchedule(
            interval_sec=60 * 60, lease_ttl_sec=300, renew_interval_sec=60,
            duration_budget_sec=60),
        RETENTION_CLEANUP: JobSchedule(
            interval_sec=24 * 60 * 60, lease_ttl_sec=600, renew_interval_sec=120,
            duration_budget_sec=300, initial_delay_sec=5 * 60),
        FOLLOWUP_DISPATCH: JobSchedule(
            interval_sec=15 * 60, lease_ttl_sec=120, renew_interval_sec=30,
            duration_budget_sec=120),
    }


@dataclass
class KeeperConfig:
    """Configuration for the maintenance keeper.

    Connection parameters for database access, lease backend selection and
    per-job schedules. All timing parameters are in seconds.
    """
    node_name: str = None
    lease_backend: str = 'sql'
    redis_url: str = 'redis://localhost:6379/0'
    lease_key_prefix: str = 'keeper:'
    claim_grace_sec: float = 120
    batch_size: int = 50
    schedules: dict[str, JobSchedule] = field(default_factory=default_schedules)

    url: str = None
    host: str = 'localhost'
    port: int = 5432
    dbname: str = 'keeper'
    user: str = 'postgres'
    password: str = 'postgres'
    appname: str = 'keeper_'

    @property
    def connection_string(self) -> str:
        if self.url:
            return self.url
        return build_connection_string(self.host, self.port, self.dbname, self.user, self.password)

    def schedule(self, name: str) -> JobSchedule:
        """Schedule for a job, falling back to a one-hour default.
        """
        return self.schedules.get(name) or JobSchedule()

    def with_schedule(self, name: str, **overrides) -> 'KeeperConfig':
        schedules = dict(self.schedules)
        schedules[name] = replace(self.schedule(name), **overrides)
        return replace(self, schedules=schedules)

    def validate(self) -> 'KeeperConfig':
        if self.lease_backend not in {'sql', 'redis', 'memory'}:
            raise ConfigError(f'Unknown lease backend: {self.lease_backend}')
        if self.claim_grace_sec <= 0:
            raise ConfigError(f'claim_grace_sec must be positive, got {self.claim_grace_sec}')
        if self.batch_size <= 0:
            raise ConfigError(f'batch_size must be positive, got {self.batch_size}')
        for name, schedule in self.schedules.items():
            schedule.validate(name)
        return self


def build_connection_string(host: str, port: int, dbname: str, user: str, password: str) -> str:
    """Build PostgreSQL connection string from parameters.

    >>> build_connection_string('db', 5432, 'keeper', 'u', 'p')
    'postgresql+psycopg://u:p@db:5432/keeper'
    """
    return (
        f'postgresql+psycopg://{user}:{password}'
        f'@{host}:{port}/{dbname}'
    )


keeper = SimpleNamespace(
    sql=SimpleNamespace(
        url=os.getenv('KEEPER_SQL_URL'),
        appname=os.getenv('KEEPER_SQL_APPNAME', 'keeper_'),
        host=os.getenv('KEEPER_SQL_HOST', 'localhost'),
        dbname=os.getenv('KEEPER_SQL_DATABASE', 'keeper'),
        user=os.getenv('KEEPER_SQL_USERNAME', 'postgres'),
        passwd=os.getenv('KEEPER_SQL_PASSWORD', 'postgres'),
        port=int(os.getenv('KEEPER_SQL_PORT', '5432')),
    ),
    lease=SimpleNamespace(
        backend=os.getenv('KEEPER_LEASE_BACKEND', 'sql'),
        redis_url=os.getenv('KEEPER_REDIS_URL', 'redis://localhost:6379/0'),
        key_prefix=os.getenv('KEEPER_LEASE_PREFIX', 'keeper:'),
    ),
    dispatch=SimpleNamespace(
        claim_grace_sec=float(os.getenv('KEEPER_CLAIM_GRACE', '120')),
        batch_size=int(os.getenv('KEEPER_BATCH_SIZE', '50')),
    ),
    node_name=os.getenv('KEEPER_NODE_NAME'),
)


def load_config(**overrides) -> KeeperConfig:
    """Build a KeeperConfig from KEEPER_* environment variables.

    Per-job toggles use KEEPER_JOB_<NAME>_ENABLED, e.g.
    KEEPER_JOB_RETENTION_CLEANUP_ENABLED=false.
    """
    schedules = default_schedules()
    for name, schedule in schedules.items():
        env_name = name.upper().replace('-', '_')
        enabled = os.getenv(f'KEEPER_JOB_{env_name}_ENABLED')
        if enabled is not None:
            schedule.enabled = enabled.lower() == 'true'
        interval = os.getenv(f'KEEPER_JOB_{env_name}_INTERVAL')
        if interval is not None:
            schedule.interval_sec = float(interval)

    config = KeeperConfig(
        node_name=keeper.node_name,
        lease_backend=keeper.lease.backend,
        redis_url=keeper.lease.redis_url,
        lease_key_prefix=keeper.lease.key_prefix,
        claim_grace_sec=keeper.dispatch.claim_grace_sec,
        batch_size=keeper.dispatch.batch_size,
        schedules=schedules,
        url=keeper.sql.url,
        host=keeper.sql.host,
        port=keeper.sql.port,
        dbname=keeper.sql.dbname,
        user=keeper.sql.user,
        password=keeper.sql.passwd,
        appname=keeper.sql.appname,
    )
    return replace(config, **overrides).validate()


if __name__ == '__main__':
    __import__('doctest').testmod()
