import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from src.modules.sources.models import DEFAULT_SOURCE, FetchMode


class ScrapeType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    SINGLE = "single"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class ProgressType(str, Enum):
    IDLE = "idle"
    STARTED = "started"
    PROGRESS = "progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


COUNTER_FIELDS = (
    "pages_scraped",
    "articles_found",
    "articles_new",
    "articles_updated",
    "articles_failed",
    "error_count",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Run(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    scrape_type: ScrapeType
    source: str
    mode: FetchMode = FetchMode.PAGINATION
    status: RunStatus = RunStatus.RUNNING
    total_pages: int | None = None
    pages_scraped: int = 0
    articles_found: int = 0
    articles_new: int = 0
    articles_updated: int = 0
    articles_failed: int = 0
    error_count: int = 0
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    last_error: str | None = None
    config: dict = Field(default_factory=dict)

    model_config = {"from_attributes": True}

    def to_row(self, *fields: str) -> dict:
        """Plain column values, optionally restricted to ``fields``."""
        data = self.model_dump(include=set(fields) or None)
        return {k: v.value if isinstance(v, Enum) else v for k, v in data.items()}


class ProgressEvent(BaseModel, frozen=True):
    """Immutable snapshot of a run broadcast to observers."""

    run_id: uuid.UUID | None = None
    progress_type: ProgressType
    total_pages: int | None = None
    pages_scraped: int = 0
    articles_found: int = 0
    articles_new: int = 0
    articles_updated: int = 0
    articles_failed: int = 0
    error_count: int = 0
    current_article: str | None = None
    message: str | None = None
    emitted_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_run(
        cls,
        run: Run,
        progress_type: ProgressType,
        current_article: str | None = None,
        message: str | None = None,
    ) -> "ProgressEvent":
        return cls(
            run_id=run.id,
            progress_type=progress_type,
            total_pages=run.total_pages,
            current_article=current_article,
            message=message,
            **{name: getattr(run, name) for name in COUNTER_FIELDS},
        )

    @classmethod
    def idle(cls) -> "ProgressEvent":
        return cls(progress_type=ProgressType.IDLE, message="No scrape running")


class StartRunRequest(BaseModel):
    scrape_type: ScrapeType = ScrapeType.INCREMENTAL
    source: str = DEFAULT_SOURCE
    mode: FetchMode = FetchMode.PAGINATION
    max_pages: int | None = Field(default=None, ge=1)
    start_id: int | None = Field(default=None, ge=0)
    end_id: int | None = Field(default=None, ge=0)
    force_rescrape: bool = False


class StartRangeRequest(BaseModel):
    start_id: int = Field(..., ge=0)
    end_id: int = Field(..., ge=0)
    source: str = DEFAULT_SOURCE
    force_rescrape: bool = False


class StartRunResponse(BaseModel):
    run_id: uuid.UUID
    message: str


class StopRunResponse(BaseModel):
    run_id: uuid.UUID
    message: str


class RunStatusResponse(BaseModel):
    running: bool
    current_run: Run | None = None
