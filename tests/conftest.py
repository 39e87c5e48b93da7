from __future__ import annotations

import asyncio
import uuid

import pytest

from src.modules.articles.contracts import ArticleStoreContract
from src.modules.runs.contracts import RunHistoryContract
from src.modules.runs.hub import ProgressHub
from src.modules.runs.manager import RunManager
from src.modules.runs.schemas import ProgressEvent, Run, RunStatus
from src.modules.scraper.contracts import FetcherContract
from src.modules.scraper.schemas import ScrapedArticle
from src.modules.sources.schemas import ArticleRef, WorkItem


def make_article(source: str, external_id: str) -> ScrapedArticle:
    return ScrapedArticle(
        source=source,
        external_id=external_id,
        url=f"https://example.test/{source}/{external_id}",
        title=f"Article {external_id}",
        content=f"Body of article {external_id}",
    )


def page_of(source: str, *ids: str) -> list[ArticleRef]:
    return [ArticleRef(source=source, external_id=i) for i in ids]


class FakeFetcher(FetcherContract):
    """Listings keyed by page number; article behaviour keyed by external id.

    A listing or article entry may be a value, an exception instance (raised),
    or a list of those consumed one call at a time.
    """

    def __init__(self) -> None:
        self.listings: dict[int, object] = {}
        self.articles: dict[str, object] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.entered: dict[str, asyncio.Event] = {}
        self.listing_calls: list[WorkItem] = []
        self.article_calls: list[str] = []

    def gate(self, external_id: str) -> asyncio.Event:
        """Block fetches of ``external_id`` until the returned event is set."""
        self.gates[external_id] = asyncio.Event()
        self.entered[external_id] = asyncio.Event()
        return self.gates[external_id]

    @staticmethod
    def _resolve(entry):
        if isinstance(entry, list) and entry and not isinstance(entry[0], ArticleRef):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        if isinstance(entry, BaseException):
            raise entry
        return entry

    async def fetch_listing(self, item: WorkItem) -> list[ArticleRef]:
        self.listing_calls.append(item)
        return self._resolve(self.listings.get(item.page, []))

    async def fetch_article(self, ref: ArticleRef) -> ScrapedArticle:
        self.article_calls.append(ref.external_id)
        if ref.external_id in self.gates:
            self.entered[ref.external_id].set()
            await self.gates[ref.external_id].wait()
        entry = self.articles.get(ref.external_id)
        if entry is None:
            return make_article(ref.source, ref.external_id)
        if callable(entry):
            return await entry(ref)
        return self._resolve(entry)


class FakeArticleStore(ArticleStoreContract):
    def __init__(self, known: set[tuple[str, str]] | None = None) -> None:
        self.known = set(known or ())
        self.saved: list[ScrapedArticle] = []

    async def exists(self, source: str, external_id: str) -> bool:
        return (source, external_id) in self.known

    async def save(self, article: ScrapedArticle) -> bool:
        key = (article.source, article.external_id)
        created = key not in self.known
        self.known.add(key)
        self.saved.append(article)
        return created


class InMemoryRunHistory(RunHistoryContract):
    def __init__(self) -> None:
        self.runs: dict[uuid.UUID, Run] = {}
        self.writes = 0

    async def create(self, run: Run) -> None:
        self.runs[run.id] = run.model_copy(deep=True)
        self.writes += 1

    async def update(self, run_id: uuid.UUID, patch: dict) -> None:
        self.runs[run_id] = Run.model_validate({**self.runs[run_id].model_dump(), **patch})
        self.writes += 1

    async def list(self, limit: int = 20) -> list[Run]:
        runs = sorted(self.runs.values(), key=lambda r: r.started_at, reverse=True)
        return runs[:limit]

    async def get(self, run_id: uuid.UUID) -> Run | None:
        return self.runs.get(run_id)

    async def get_active(self) -> Run | None:
        active = await self.list_active()
        return active[0] if active else None

    async def list_active(self) -> list[Run]:
        runs = await self.list(len(self.runs))
        return [run for run in runs if run.status is RunStatus.RUNNING]


class RecordingHub(ProgressHub):
    """Keeps every published event and the persisted row at publish time."""

    def __init__(self, history: InMemoryRunHistory, buffer_size: int = 100) -> None:
        super().__init__(buffer_size)
        self._history = history
        self.events: list[ProgressEvent] = []
        self.persisted_at_publish: list[Run | None] = []

    def publish(self, event: ProgressEvent) -> None:
        self.events.append(event)
        self.persisted_at_publish.append(
            self._history.runs.get(event.run_id, None) if event.run_id else None
        )
        super().publish(event)


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def article_store() -> FakeArticleStore:
    return FakeArticleStore()


@pytest.fixture
def history() -> InMemoryRunHistory:
    return InMemoryRunHistory()


@pytest.fixture
def hub(history) -> RecordingHub:
    return RecordingHub(history)


@pytest.fixture
def manager_factory(fetcher, article_store, history, hub):
    def factory(**overrides) -> RunManager:
        options = {
            "max_retries": 3,
            "fetch_timeout": 2.0,
            "backoff_base": 0.0,
            "backoff_max": 0.0,
            "max_run_errors": 50,
        }
        options.update(overrides)
        return RunManager(fetcher, article_store, history, hub, **options)

    return factory


@pytest.fixture
def manager(manager_factory) -> RunManager:
    return manager_factory()
