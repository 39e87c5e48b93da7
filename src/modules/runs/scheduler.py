import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from src.config.settings import settings
from src.modules.runs.exceptions import ScrapeError
from src.modules.runs.manager import RunManager, run_manager
from src.modules.runs.schemas import ScrapeType, StartRunRequest

logger = logging.getLogger(__name__)


class RunScheduler:
    """Starts an incremental run on a cron schedule when one is configured."""

    def __init__(self, manager: RunManager, cron: str | None, source: str) -> None:
        self._manager = manager
        self._cron = cron
        self._source = source
        self._scheduler = AsyncIOScheduler()

    async def _tick(self) -> None:
        request = StartRunRequest(scrape_type=ScrapeType.INCREMENTAL, source=self._source)
        try:
            run_id = await self._manager.start_run(request)
        except ScrapeError as exc:
            logger.info("Scheduled scrape skipped: %s", exc)
            return
        logger.info("Scheduled scrape started: %s", run_id)

    def start(self) -> None:
        if not self._cron:
            return
        self._scheduler.add_job(
            self._tick,
            CronTrigger.from_crontab(self._cron),
            id="scheduled_scrape",
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Scheduler started: incremental %s scrape at '%s'", self._source, self._cron)

    def stop(self) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")


run_scheduler = RunScheduler(run_manager, settings.schedule_cron, settings.schedule_source)
