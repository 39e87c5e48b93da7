import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

from src.config.settings import settings
from src.modules.articles.contracts import ArticleStoreContract
from src.modules.articles.service import article_service
from src.modules.runs.contracts import RunHistoryContract
from src.modules.runs.exceptions import (
    ConflictError,
    FatalRunError,
    InvalidRangeError,
    NotRunningError,
    UnknownSourceError,
)
from src.modules.runs.hub import ProgressHub, progress_hub
from src.modules.runs.schemas import (
    ProgressEvent,
    ProgressType,
    Run,
    RunStatus,
    RunStatusResponse,
    ScrapeType,
    StartRunRequest,
    utcnow,
)
from src.modules.runs.service import run_history_service
from src.modules.runs.state import RunStateMachine
from src.modules.scraper.contracts import FetcherContract
from src.modules.scraper.exceptions import (
    ArticleNotFoundError,
    FetchError,
    TransientFetchError,
)
from src.modules.scraper.schemas import ScrapedArticle
from src.modules.scraper.service import scraper_service
from src.modules.sources.models import FetchMode, SourceInfo, resolve_source
from src.modules.sources.schemas import ArticleRef, WorkItem
from src.modules.sources.strategies import SourceStrategy, build_strategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

INTERRUPTED_MESSAGE = "Interrupted: process restarted while the run was active"

_TERMINAL_PROGRESS = {
    RunStatus.COMPLETED: ProgressType.COMPLETED,
    RunStatus.FAILED: ProgressType.FAILED,
    RunStatus.CANCELLED: ProgressType.CANCELLED,
}


class RunCancelled(Exception):
    """Raised inside the drive loop once a stop request is observed."""


@dataclass(eq=False)
class ActiveRun:
    state: RunStateMachine
    source: SourceInfo
    strategy: SourceStrategy
    force_rescrape: bool
    stop_on_existing: bool
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    persisted: dict | None = None


class RunSlot:
    """Single-slot register for the active run, guarded by one lock."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._active: ActiveRun | None = None

    async def claim(self, active: ActiveRun) -> None:
        async with self._lock:
            if self._active is not None:
                raise ConflictError(self._active.state.run_id)
            self._active = active

    async def release(self, active: ActiveRun) -> None:
        async with self._lock:
            if self._active is active:
                self._active = None

    async def current(self) -> ActiveRun | None:
        async with self._lock:
            return self._active


class RunManager:
    """Starts, drives and stops scrape runs; at most one runs at a time."""

    def __init__(
        self,
        fetcher: FetcherContract,
        articles: ArticleStoreContract,
        history: RunHistoryContract,
        hub: ProgressHub,
        *,
        max_retries: int | None = None,
        fetch_timeout: float | None = None,
        backoff_base: float | None = None,
        backoff_max: float | None = None,
        max_run_errors: int | None = None,
        max_range_size: int | None = None,
        default_max_pages: int | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._articles = articles
        self._history = history
        self._hub = hub
        self._max_retries = max(max_retries or settings.scraper_max_retries, 1)
        self._fetch_timeout = fetch_timeout or settings.fetch_timeout
        self._backoff_base = settings.backoff_base if backoff_base is None else backoff_base
        self._backoff_max = settings.backoff_max if backoff_max is None else backoff_max
        self._max_run_errors = max_run_errors or settings.max_run_errors
        self._max_range_size = max_range_size or settings.max_range_size
        self._default_max_pages = default_max_pages or settings.default_max_pages
        self._slot = RunSlot()

    # ── Control surface ─────────────────────────────────────────

    async def start_run(self, request: StartRunRequest) -> uuid.UUID:
        source = resolve_source(request.source)
        if source is None:
            raise UnknownSourceError(request.source)

        max_pages = request.max_pages or self._default_max_pages
        end_id = request.end_id
        if request.scrape_type is ScrapeType.SINGLE:
            max_pages = 1
            if request.mode is FetchMode.RANGE:
                end_id = request.start_id if end_id is None else end_id
                if request.start_id != end_id:
                    raise InvalidRangeError("A single scrape needs start_id == end_id")

        strategy = build_strategy(
            source,
            request.mode,
            max_pages=max_pages,
            start_id=request.start_id,
            end_id=end_id,
            max_range_size=self._max_range_size,
        )
        stop_on_existing = request.scrape_type is ScrapeType.INCREMENTAL
        config = {
            "max_pages": max_pages if request.mode is FetchMode.PAGINATION else None,
            "start_id": request.start_id,
            "end_id": end_id,
            "force_rescrape": request.force_rescrape,
            "stop_on_existing": stop_on_existing,
        }
        state = RunStateMachine.start(
            request.scrape_type,
            source.id,
            request.mode,
            total_pages=strategy.total_pages,
            config=config,
        )
        active = ActiveRun(
            state=state,
            source=source,
            strategy=strategy,
            force_rescrape=request.force_rescrape,
            stop_on_existing=stop_on_existing,
        )
        await self._await_wind_down()
        await self._slot.claim(active)
        active.task = asyncio.create_task(self._drive(active), name=f"scrape-run-{state.run_id}")
        logger.info(
            "Started %s %s scrape of %s (run %s)",
            request.scrape_type.value, request.mode.value, source.name, state.run_id,
        )
        return state.run_id

    async def stop_run(self) -> uuid.UUID:
        active = await self._slot.current()
        if active is None:
            raise NotRunningError()
        if not active.cancel_event.is_set():
            active.cancel_event.set()
            logger.info("Cancellation requested for run %s", active.state.run_id)
        return active.state.run_id

    async def get_status(self) -> RunStatusResponse:
        active = await self._slot.current()
        if active is None:
            return RunStatusResponse(running=False)
        return RunStatusResponse(
            running=not active.state.is_terminal, current_run=active.state.snapshot()
        )

    async def list_runs(self, limit: int = 20) -> list[Run]:
        return await self._history.list(limit)

    async def join(self) -> None:
        """Wait for the active run, if any, to reach a terminal state."""
        active = await self._slot.current()
        if active is not None and active.task is not None:
            await asyncio.wait({active.task})

    async def _await_wind_down(self) -> None:
        """Let a run that already reached a terminal state finish persisting."""
        active = await self._slot.current()
        if active is not None and active.state.is_terminal and active.task is not None:
            await asyncio.wait({active.task})

    async def recover(self) -> None:
        """Mark runs left running by a previous process as failed."""
        active = await self._slot.current()
        for stale in await self._history.list_active():
            if active is not None and active.state.run_id == stale.id:
                continue
            await self._history.update(
                stale.id,
                {
                    "status": RunStatus.FAILED.value,
                    "completed_at": utcnow(),
                    "last_error": INTERRUPTED_MESSAGE,
                },
            )
            logger.warning("Run %s was interrupted by a restart; marked failed", stale.id)

    async def shutdown(self) -> None:
        try:
            await self.stop_run()
        except NotRunningError:
            return
        await self.join()

    # ── Drive loop ──────────────────────────────────────────────

    async def _drive(self, active: ActiveRun) -> None:
        state = active.state
        try:
            await self._history.create(state.snapshot())
            active.persisted = state.patch()
            self._hub.publish(
                ProgressEvent.from_run(
                    state.snapshot(),
                    ProgressType.STARTED,
                    message=f"Starting {active.source.name} scrape...",
                )
            )
            await self._run_items(active)
        except RunCancelled:
            state.cancel()
        except asyncio.CancelledError:
            state.cancel()
            raise
        except FatalRunError as exc:
            logger.error("Run %s aborted: %s", state.run_id, exc)
            state.fail(str(exc))
        except Exception as exc:
            logger.exception("Run %s failed", state.run_id)
            state.fail(f"Internal error: {exc}")
        finally:
            await self._finalize(active)

    async def _run_items(self, active: ActiveRun) -> None:
        previous: WorkItem | None = None
        while True:
            self._check_cancelled(active)
            item = active.strategy.next_item(previous)
            if item is None:
                break
            previous = item
            if item.is_listing:
                if await self._process_listing(active, item):
                    break
            else:
                await self._process_range_item(active, item)
        self._check_cancelled(active)
        snapshot = active.state.snapshot()
        logger.info(
            "%s scrape complete: %d pages, %d found, %d new, %d updated, %d failed",
            active.source.name, snapshot.pages_scraped, snapshot.articles_found,
            snapshot.articles_new, snapshot.articles_updated, snapshot.articles_failed,
        )
        active.state.complete()

    async def _process_listing(self, active: ActiveRun, item: WorkItem) -> bool:
        """Handle one listing page; returns True when the run should stop."""
        state = active.state
        label = item.describe()
        await self._checkpoint(active, ProgressType.PROGRESS, current_article=label)
        try:
            refs = await self._with_retry(active, label, lambda: self._fetcher.fetch_listing(item))
        except ArticleNotFoundError:
            refs = []
        except FetchError as exc:
            logger.error("Failed to scrape %s: %s", label, exc)
            self._record_failure(active, f"{label}: {exc}")
            return False

        if not refs:
            logger.info("%s: no more articles at %s", active.source.name, label)
            return True

        all_known = True
        for ref in refs:
            self._check_cancelled(active)
            state.record_progress(articles_found=1)
            known = await self._articles.exists(ref.source, ref.external_id)
            if known and not active.force_rescrape:
                if active.stop_on_existing and active.strategy.stops_at_first_known:
                    logger.info(
                        "%s: found existing article %s, stopping",
                        active.source.name, ref.external_id,
                    )
                    state.record_progress(pages_scraped=1)
                    await self._checkpoint(active, ProgressType.PROGRESS, message="Reached known articles")
                    return True
                continue
            all_known = False
            await self._checkpoint(active, ProgressType.PROGRESS, current_article=ref.external_id)
            await self._process_article(active, ref)

        state.record_progress(pages_scraped=1)
        await self._checkpoint(active, ProgressType.PROGRESS, message=f"Finished {label}")
        if all_known and active.stop_on_existing:
            logger.info("%s: all articles on %s already exist, stopping", active.source.name, label)
            return True
        return False

    async def _process_range_item(self, active: ActiveRun, item: WorkItem) -> None:
        state = active.state
        ref = ArticleRef(source=item.source, external_id=item.external_id)
        await self._checkpoint(active, ProgressType.PROGRESS, current_article=ref.external_id)
        known = await self._articles.exists(ref.source, ref.external_id)
        if not known or active.force_rescrape:
            if await self._process_article(active, ref):
                state.record_progress(articles_found=1)
        state.record_progress(pages_scraped=1)
        await self._checkpoint(active, ProgressType.PROGRESS, current_article=ref.external_id)

    async def _process_article(self, active: ActiveRun, ref: ArticleRef) -> bool:
        state = active.state
        try:
            article: ScrapedArticle = await self._with_retry(
                active, ref.external_id, lambda: self._fetcher.fetch_article(ref)
            )
        except ArticleNotFoundError:
            logger.debug("Article %s/%s does not exist", ref.source, ref.external_id)
            state.record_progress(articles_failed=1)
            return False
        except FetchError as exc:
            logger.warning("Failed to scrape article %s/%s: %s", ref.source, ref.external_id, exc)
            state.record_progress(articles_failed=1)
            self._record_failure(active, f"{ref.external_id}: {exc}")
            return False

        if await self._articles.save(article):
            state.record_progress(articles_new=1)
        else:
            state.record_progress(articles_updated=1)
        return True

    def _record_failure(self, active: ActiveRun, message: str) -> None:
        state = active.state
        state.record_error(message)
        errors = state.snapshot().error_count
        if errors >= self._max_run_errors:
            raise FatalRunError(f"Error budget exhausted after {errors} errors; last: {message}")

    # ── Fetching with retry and cancellation ────────────────────

    def _backoff(self, attempt: int) -> float:
        return min(self._backoff_base * 2 ** (attempt - 1), self._backoff_max)

    async def _with_retry(
        self, active: ActiveRun, label: str, call: Callable[[], Awaitable[T]]
    ) -> T:
        last_exc: TransientFetchError | None = None
        for attempt in range(1, self._max_retries + 1):
            try:
                return await self._await_fetch(active, call())
            except TransientFetchError as exc:
                last_exc = exc
                if attempt == self._max_retries:
                    break
                wait = self._backoff(attempt)
                logger.warning(
                    "Attempt %d/%d failed for %s: %s, retrying in %.1fs",
                    attempt, self._max_retries, label, exc, wait,
                )
                await self._sleep(active, wait)
        raise last_exc  # type: ignore[misc]

    async def _await_fetch(self, active: ActiveRun, coro: Awaitable[T]) -> T:
        fetch = asyncio.ensure_future(coro)
        cancelled = asyncio.ensure_future(active.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch, cancelled},
                timeout=self._fetch_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()
            if not fetch.done():
                fetch.cancel()
                await asyncio.gather(fetch, return_exceptions=True)

        if fetch in done:
            return fetch.result()
        if active.cancel_event.is_set():
            raise RunCancelled()
        raise TransientFetchError(f"Timed out after {self._fetch_timeout:.0f}s")

    async def _sleep(self, active: ActiveRun, delay: float) -> None:
        try:
            await asyncio.wait_for(active.cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RunCancelled()

    @staticmethod
    def _check_cancelled(active: ActiveRun) -> None:
        if active.cancel_event.is_set():
            raise RunCancelled()

    # ── Persistence and broadcast ───────────────────────────────

    async def _checkpoint(
        self,
        active: ActiveRun,
        progress_type: ProgressType,
        current_article: str | None = None,
        message: str | None = None,
    ) -> None:
        """Persist changed counters, then broadcast them."""
        patch = active.state.patch()
        if patch != active.persisted:
            await self._history.update(active.state.run_id, patch)
            active.persisted = patch
        self._hub.publish(
            ProgressEvent.from_run(active.state.snapshot(), progress_type, current_article, message)
        )

    async def _finalize(self, active: ActiveRun) -> None:
        state = active.state
        if not state.is_terminal:
            state.fail("Run ended without reaching a terminal state")
        snapshot = state.snapshot()
        if snapshot.status is RunStatus.FAILED:
            message = snapshot.last_error
        else:
            message = f"{active.source.name} scrape {snapshot.status.value}"
        try:
            if active.persisted is None:
                await self._history.create(snapshot)
            else:
                await self._history.update(state.run_id, state.patch())
        except Exception:
            logger.exception("Could not persist final state of run %s", state.run_id)
        finally:
            self._hub.publish(
                ProgressEvent.from_run(snapshot, _TERMINAL_PROGRESS[snapshot.status], message=message)
            )
            await self._slot.release(active)


run_manager = RunManager(scraper_service, article_service, run_history_service, progress_hub)
