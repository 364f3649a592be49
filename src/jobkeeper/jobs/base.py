import logging

from jobkeeper.dispatch import CycleStats
from jobkeeper.runner import RunContext
from jobkeeper.settings import Settings, StaticSettings
from jobkeeper.store import AppointmentStore
from jobkeeper.utils import utcnow

logger = logging.getLogger(__name__)


class JobBody:
    """Callable job body: ``body(ctx) -> summary dict``.

    Subclasses implement ``run(ctx, stats)``. Calling the body logs one
    summary line for the cycle.
    """
    name = 'job'

    def __init__(self, store: AppointmentStore, settings: Settings = None, clock: callable = None):
        self.store = store
        self.settings = settings or StaticSettings()
        self.clock = clock or utcnow

    def __call__(self, ctx: RunContext) -> dict:
        stats = self.execute(ctx)
        logger.info(stats.summary_line())
        return stats.as_dict()

    def execute(self, ctx: RunContext) -> CycleStats:
        stats = CycleStats(self.name, ctx.cycle_id)
        self.run(ctx, stats)
        return stats

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        raise NotImplementedError

    def setting(self, key: str):
        return self.settings.get(key)


class CompositeJob(JobBody):
    """Runs several job bodies as steps of one cycle under one lease.

    A failing step is logged and counted; later steps still run. Steps stop
    once the lease is lost.
    """

    def __init__(self, name: str, steps: list[JobBody]):
        self.name = name
        self.steps = list(steps)

    def run(self, ctx: RunContext, stats: CycleStats) -> None:
        for step in self.steps:
            if not ctx.lease_valid:
                logger.warning(f'{ctx.log_prefix} lease lost, skipping remaining steps from {step.name}')
                stats.bump('steps_abandoned', len(self.steps) - self.steps.index(step))
                return
            try:
                result = step.execute(ctx)
            except Exception as e:
                logger.error(f'{ctx.log_prefix} step {step.name} failed: {e}', exc_info=True)
                stats.bump('steps_failed')
                continue
            for key, value in result.as_dict().items():
                if value:
                    stats.bump(f'{step.name}.{key}', value)
