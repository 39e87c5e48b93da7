from __future__ import annotations

import uuid
from abc import ABC, abstractmethod

from src.modules.runs.schemas import Run


class RunHistoryContract(ABC):
    @abstractmethod
    async def create(self, run: Run) -> None: ...

    @abstractmethod
    async def update(self, run_id: uuid.UUID, patch: dict) -> None: ...

    @abstractmethod
    async def list(self, limit: int = 20) -> list[Run]: ...

    @abstractmethod
    async def get(self, run_id: uuid.UUID) -> Run | None: ...

    @abstractmethod
    async def get_active(self) -> Run | None: ...

    @abstractmethod
    async def list_active(self) -> list[Run]: ...
