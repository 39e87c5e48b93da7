import hashlib
from datetime import datetime

from pydantic import BaseModel, Field


class ScrapedArticle(BaseModel):
    """Complete article after scraping the individual article page."""

    source: str
    external_id: str
    url: str
    title: str
    content: str
    excerpt: str | None = None
    author: str | None = None
    published_at: datetime | None = None
    tags: list[str] = Field(default_factory=list)
    view_count: int | None = None
    thumbnail_url: str | None = None

    @property
    def content_hash(self) -> str:
        return hashlib.sha256(self.content.encode("utf-8")).hexdigest()

    @property
    def read_time_minutes(self) -> int:
        return max(len(self.content.split()) // 200, 1)
