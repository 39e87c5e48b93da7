from abc import ABC, abstractmethod

from src.modules.scraper.schemas import ScrapedArticle
from src.modules.sources.schemas import ArticleRef, WorkItem


class FetcherContract(ABC):
    @abstractmethod
    async def fetch_listing(self, item: WorkItem) -> list[ArticleRef]: ...

    @abstractmethod
    async def fetch_article(self, ref: ArticleRef) -> ScrapedArticle: ...

    async def aclose(self) -> None:
        return None
