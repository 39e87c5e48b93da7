from abc import ABC, abstractmethod

from src.modules.scraper.schemas import ScrapedArticle


class ArticleStoreContract(ABC):
    @abstractmethod
    async def exists(self, source: str, external_id: str) -> bool: ...

    @abstractmethod
    async def save(self, article: ScrapedArticle) -> bool:
        """Insert or update; returns True when the article was new."""
