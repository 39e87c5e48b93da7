import logging

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.config.database import async_session
from src.modules.articles.contracts import ArticleStoreContract
from src.modules.articles.models import Article
from src.modules.scraper.schemas import ScrapedArticle

logger = logging.getLogger(__name__)

_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class ArticleService(ArticleStoreContract):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session) -> None:
        self._session_factory = session_factory

    async def exists(self, source: str, external_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Article.id)
                .where(Article.source == source, Article.external_id == external_id)
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def save(self, article: ScrapedArticle) -> bool:
        values = {
            "url": article.url,
            "title": article.title,
            "content": article.content,
            "excerpt": article.excerpt,
            "author": article.author,
            "published_at": article.published_at,
            "view_count": article.view_count,
            "read_time_minutes": article.read_time_minutes,
            "thumbnail_url": article.thumbnail_url,
            "tags": article.tags,
            "content_hash": article.content_hash,
        }
        async with self._session_factory() as session, session.begin():
            existed = (
                await session.execute(
                    select(Article.id).where(
                        Article.source == article.source,
                        Article.external_id == article.external_id,
                    )
                )
            ).scalar_one_or_none() is not None
            insert = _INSERTS[session.get_bind().dialect.name]
            stmt = (
                insert(Article)
                .values(source=article.source, external_id=article.external_id, **values)
                .on_conflict_do_update(
                    index_elements=["source", "external_id"],
                    set_={**values, "updated_at": func.now()},
                )
            )
            await session.execute(stmt)

        logger.debug(
            "%s article %s/%s", "Updated" if existed else "Stored",
            article.source, article.external_id,
        )
        return not existed


article_service = ArticleService()
