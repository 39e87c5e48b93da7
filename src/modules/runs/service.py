from __future__ import annotations

import logging
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.database import async_session
from src.modules.runs.contracts import RunHistoryContract
from src.modules.runs.models import ScrapeRunRecord
from src.modules.runs.schemas import Run, RunStatus

logger = logging.getLogger(__name__)


class RunHistoryService(RunHistoryContract):
    """Run history in the ``scrape_runs`` table; one transaction per write."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session) -> None:
        self._session_factory = session_factory

    async def create(self, run: Run) -> None:
        async with self._session_factory() as session, session.begin():
            session.add(ScrapeRunRecord(**run.to_row()))

    async def update(self, run_id: uuid.UUID, patch: dict) -> None:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                update(ScrapeRunRecord)
                .where(ScrapeRunRecord.id == run_id)
                .values(**patch)
            )
        if result.rowcount == 0:
            logger.warning("Run %s not found in history; update dropped", run_id)

    async def list(self, limit: int = 20) -> list[Run]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ScrapeRunRecord)
                .order_by(ScrapeRunRecord.started_at.desc())
                .limit(limit)
            )
            return [Run.model_validate(record) for record in result.scalars().all()]

    async def get(self, run_id: uuid.UUID) -> Run | None:
        async with self._session_factory() as session:
            record = await session.get(ScrapeRunRecord, run_id)
            return Run.model_validate(record) if record else None

    async def get_active(self) -> Run | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ScrapeRunRecord)
                .where(ScrapeRunRecord.status == RunStatus.RUNNING.value)
                .order_by(ScrapeRunRecord.started_at.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return Run.model_validate(record) if record else None

    async def list_active(self) -> list[Run]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ScrapeRunRecord)
                .where(ScrapeRunRecord.status == RunStatus.RUNNING.value)
                .order_by(ScrapeRunRecord.started_at.desc())
            )
            return [Run.model_validate(record) for record in result.scalars().all()]


run_history_service = RunHistoryService()
