"""
Analysis Scheduler: periodic batch passes per institution.

Jobs:
1. analysis:{institution_id} (every ANALYSIS_INTERVAL_MINUTES): scheduled
   mode batch; max_instances=1 so a slow pass never overlaps itself
"""

from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from cohortwatch.config import settings
from cohortwatch.db.store import RecordStore
from cohortwatch.monitoring.engine import MonitoringEngine
from cohortwatch.monitoring.schemas import BatchResult, EvaluationMode

logger = structlog.get_logger(__name__)


class AnalysisScheduler:
    """Background scheduler for scheduled-mode batch runs."""

    def __init__(
        self,
        engine: MonitoringEngine,
        store: RecordStore,
        interval_minutes: Optional[int] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ):
        self.engine = engine
        self.store = store
        self.interval_minutes = interval_minutes or settings.analysis_interval_minutes
        self.scheduler = scheduler or AsyncIOScheduler()

    @staticmethod
    def job_id(institution_id: str) -> str:
        return f"analysis:{institution_id}"

    async def start(self) -> None:
        """Register one job per known institution and start the scheduler."""
        async with self.store.session() as uow:
            institution_ids = await uow.list_institution_ids()
        for institution_id in institution_ids:
            self.add_institution(institution_id)
        self.scheduler.start()
        logger.info(
            "analysis_scheduler_started",
            institutions=len(institution_ids),
            interval_minutes=self.interval_minutes,
        )

    def add_institution(self, institution_id: str) -> None:
        self.scheduler.add_job(
            self.run_tick,
            IntervalTrigger(minutes=self.interval_minutes),
            args=[institution_id],
            id=self.job_id(institution_id),
            max_instances=1,
            replace_existing=True,
        )

    def stop(self) -> None:
        """Gracefully stop the scheduler."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("analysis_scheduler_stopped")

    async def run_tick(self, institution_id: str) -> Optional[BatchResult]:
        """One scheduled pass; failures are logged, never raised."""
        try:
            result = await self.engine.run_batch(institution_id, mode=EvaluationMode.SCHEDULED)
        except Exception as e:
            logger.error(
                "scheduled_analysis_failed",
                institution_id=institution_id,
                error=str(e),
            )
            return None
        logger.info(
            "scheduled_analysis_completed",
            institution_id=institution_id,
            status=result.status.value,
            matches=result.matches,
            executed=result.executed,
        )
        return result
