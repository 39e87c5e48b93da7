import logging

from src.modules.runs.schemas import (
    COUNTER_FIELDS,
    Run,
    RunStatus,
    ScrapeType,
    utcnow,
)
from src.modules.sources.models import FetchMode

logger = logging.getLogger(__name__)


class RunStateMachine:
    """Lifecycle of one run: running -> completed | failed | cancelled.

    Terminal states are absorbing. Counter updates and terminal transitions
    after termination are no-ops that return False, so a late fetch result
    racing a cancellation never touches a finished run.
    """

    def __init__(self, run: Run) -> None:
        self._run = run

    @classmethod
    def start(
        cls,
        scrape_type: ScrapeType,
        source: str,
        mode: FetchMode,
        total_pages: int | None = None,
        config: dict | None = None,
    ) -> "RunStateMachine":
        run = Run(
            scrape_type=scrape_type,
            source=source,
            mode=mode,
            total_pages=total_pages,
            config=config or {},
        )
        return cls(run)

    @property
    def run_id(self):
        return self._run.id

    @property
    def status(self) -> RunStatus:
        return self._run.status

    @property
    def is_terminal(self) -> bool:
        return self._run.status.is_terminal

    def snapshot(self) -> Run:
        return self._run.model_copy(deep=True)

    def patch(self) -> dict:
        """Mutable columns of the run, for the history store."""
        return self._run.to_row(
            "status", "total_pages", "completed_at", "last_error", *COUNTER_FIELDS
        )

    # ── Counters ────────────────────────────────────────────────

    def record_progress(self, **delta: int) -> bool:
        unknown = set(delta) - set(COUNTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown counters: {', '.join(sorted(unknown))}")
        if any(value < 0 for value in delta.values()):
            raise ValueError("Counter increments must be non-negative")
        if self.is_terminal:
            logger.debug("Ignoring progress for finished run %s: %s", self.run_id, delta)
            return False
        for name, value in delta.items():
            setattr(self._run, name, getattr(self._run, name) + value)
        return True

    def record_error(self, message: str) -> bool:
        if self.is_terminal:
            return False
        self._run.error_count += 1
        self._run.last_error = message
        return True

    # ── Terminal transitions ────────────────────────────────────

    def _finish(self, status: RunStatus, reason: str | None = None) -> bool:
        if self.is_terminal:
            return False
        self._run.status = status
        self._run.completed_at = utcnow()
        if reason is not None:
            self._run.last_error = reason
        logger.info("Run %s %s", self.run_id, status.value)
        return True

    def complete(self) -> bool:
        return self._finish(RunStatus.COMPLETED)

    def fail(self, reason: str) -> bool:
        return self._finish(RunStatus.FAILED, reason)

    def cancel(self) -> bool:
        return self._finish(RunStatus.CANCELLED)
