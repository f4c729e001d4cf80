import asyncio
from datetime import datetime, timedelta
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from taskflow_engine.config.logging import get_logger
from taskflow_engine.config.settings import settings
from taskflow_engine.database.repositories import RunRepository
from taskflow_engine.services.orchestrator import RunOrchestrator

logger = get_logger("dispatcher")


class RunDispatcher:
    """Picks up runs left in ``queued`` (after a restart, say) and executes them.

    Runs are only considered once they have been queued for a full polling
    interval, so runs the scheduler has just launched are left alone. A
    double launch is harmless: only one execution wins queued -> running.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        orchestrator: RunOrchestrator,
        interval_seconds: Optional[int] = None,
        max_concurrent: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.dispatch_interval_seconds
        self.max_concurrent = max_concurrent or settings.max_concurrent_dispatches
        self.running = False
        self.current_cycle = 0

    async def start(self):
        self.running = True
        logger.info("Starting queued-run dispatcher",
                    interval=self.interval_seconds,
                    max_concurrent=self.max_concurrent)

        while self.running:
            cycle_start_time = datetime.now()
            self.current_cycle += 1

            try:
                await self.dispatch_queued_runs()
            except Exception as e:
                logger.error("Error during dispatch cycle", cycle=self.current_cycle, error=str(e))

            cycle_duration = (datetime.now() - cycle_start_time).total_seconds()
            logger.debug("Dispatch cycle completed",
                         cycle=self.current_cycle,
                         duration_seconds=round(cycle_duration, 2))

            await asyncio.sleep(self.interval_seconds)

    def stop(self):
        self.running = False
        logger.info("Stopping queued-run dispatcher")

    async def dispatch_queued_runs(self, grace_seconds: Optional[float] = None) -> int:
        """Execute stale queued runs in batches of ``max_concurrent``."""
        grace = self.interval_seconds if grace_seconds is None else grace_seconds
        async with self.session_factory() as session:
            queued = await RunRepository(session).get_queued_runs(
                limit=self.max_concurrent * 10,
                created_before=datetime.utcnow() - timedelta(seconds=grace)
            )

        if not queued:
            return 0

        logger.info("Dispatching queued runs", cycle=self.current_cycle, total_runs=len(queued))
        dispatched = 0
        for i in range(0, len(queued), self.max_concurrent):
            batch = queued[i:i + self.max_concurrent]
            results = await asyncio.gather(
                *(self.orchestrator.execute_run(run.id) for run in batch),
                return_exceptions=True
            )
            for run, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.error("Failed to dispatch run", run_id=run.id, error=str(result))
                else:
                    dispatched += 1
        return dispatched
