from enum import Enum

from pydantic import BaseModel

from src.modules.sources.models import FetchMode


class WorkItemKind(str, Enum):
    PAGE = "page"
    ARCHIVE = "archive"
    ARTICLE = "article"


class WorkItem(BaseModel, frozen=True):
    """One unit of fetch work: a listing page, an archive page or one article id."""

    kind: WorkItemKind
    source: str
    page: int | None = None
    external_id: str | None = None

    @property
    def is_listing(self) -> bool:
        return self.kind is not WorkItemKind.ARTICLE

    def describe(self) -> str:
        if self.is_listing:
            return f"{self.source} {self.kind.value} {self.page}"
        return f"{self.source}/{self.external_id}"


class ArticleRef(BaseModel, frozen=True):
    """An article discovered on a listing page, not fetched yet."""

    source: str
    external_id: str
    title: str | None = None


class SourceResponse(BaseModel):
    id: str
    name: str
    base_url: str
    listing: str
    modes: list[FetchMode]
