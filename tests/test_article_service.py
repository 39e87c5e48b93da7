import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from src.config.database import Base
from src.modules.articles.models import Article
from src.modules.articles.service import ArticleService
from tests.conftest import make_article


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def articles(session_factory) -> ArticleService:
    return ArticleService(session_factory)


async def stored(session_factory) -> list[Article]:
    async with session_factory() as session:
        return list((await session.execute(select(Article))).scalars().all())


async def test_save_reports_new_then_updated(articles, session_factory):
    first = make_article("aibase", "42")
    assert await articles.save(first) is True

    changed = first.model_copy(update={"title": "Revised", "content": "Revised body"})
    assert await articles.save(changed) is False

    (row,) = await stored(session_factory)
    assert row.title == "Revised"
    assert row.content == "Revised body"
    assert row.content_hash == changed.content_hash
    assert row.content_hash != first.content_hash


async def test_save_writes_derived_fields(articles, session_factory):
    article = make_article("smolai", "24-06-03-weekly").model_copy(update={"tags": ["llm"]})
    await articles.save(article)

    (row,) = await stored(session_factory)
    assert row.content_hash == article.content_hash
    assert row.read_time_minutes == article.read_time_minutes
    assert row.tags == ["llm"]


async def test_exists_is_scoped_by_source(articles):
    await articles.save(make_article("aibase", "7"))

    assert await articles.exists("aibase", "7") is True
    assert await articles.exists("aibase", "8") is False
    assert await articles.exists("smolai", "7") is False
