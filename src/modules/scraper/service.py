import asyncio
import logging
import re
from datetime import datetime, timezone

import httpx
from bs4 import BeautifulSoup

from src.config.settings import settings
from src.modules.runs.exceptions import FatalRunError
from src.modules.scraper.contracts import FetcherContract
from src.modules.scraper.exceptions import (
    ArticleNotFoundError,
    FetchError,
    TransientFetchError,
)
from src.modules.scraper.schemas import ScrapedArticle
from src.modules.sources.models import SOURCES
from src.modules.sources.schemas import ArticleRef, WorkItem, WorkItemKind

logger = logging.getLogger(__name__)

AIBASE_LISTING_URL = "https://news.aibase.com/news"
SMOLAI_ARCHIVE_URL = "https://news.smol.ai/issues"
EXCERPT_LENGTH = 200

_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
        "AppleWebKit/537.36 (KHTML, like Gecko) "
        "Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Connection": "keep-alive",
}


def _excerpt(content: str) -> str:
    if len(content) > EXCERPT_LENGTH:
        return content[:EXCERPT_LENGTH].strip() + "..."
    return content


def _text(soup: BeautifulSoup, selector: str) -> str | None:
    el = soup.select_one(selector)
    if el is None:
        return None
    text = el.get_text(strip=True)
    return text or None


class ScraperService(FetcherContract):
    """Fetches listings and articles from AIBase and smol.ai."""

    def __init__(self, requests_per_second: int | None = None) -> None:
        rate = settings.scraper_rate_limit if requests_per_second is None else requests_per_second
        self._delay = 1.0 / rate if rate > 0 else 0.0
        self._client: httpx.AsyncClient | None = None

    # ── HTTP layer ──────────────────────────────────────────────

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers=_HEADERS,
                timeout=settings.fetch_timeout,
                follow_redirects=True,
            )
        return self._client

    async def _fetch(self, url: str) -> str:
        """Single attempt; retries belong to the run manager."""
        await asyncio.sleep(self._delay)
        try:
            response = await self._get_client().get(url)
        except httpx.RequestError as exc:
            raise TransientFetchError(f"Request failed for {url}: {exc}") from exc

        status = response.status_code
        if status == 404:
            raise ArticleNotFoundError(f"Not found: {url}")
        if status == 429:
            retry_after = response.headers.get("retry-after", "")
            if retry_after.isdigit():
                logger.warning("Rate limited, waiting %s seconds", retry_after)
                await asyncio.sleep(int(retry_after))
            raise TransientFetchError(f"Rate limited (429): {url}")
        if status >= 500:
            raise TransientFetchError(f"HTTP error {status}: {url}")
        if status >= 400:
            raise FetchError(f"HTTP error {status}: {url}")
        return response.text

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ── Contract ────────────────────────────────────────────────

    async def fetch_listing(self, item: WorkItem) -> list[ArticleRef]:
        if item.kind is WorkItemKind.PAGE and item.source == "aibase":
            url = AIBASE_LISTING_URL if item.page == 1 else f"{AIBASE_LISTING_URL}?page={item.page}"
            try:
                html = await self._fetch(url)
            except ArticleNotFoundError:
                return []
            return self._parse_aibase_listing(html)

        if item.kind is WorkItemKind.ARCHIVE and item.source == "smolai":
            # smol.ai publishes its whole archive on one index page
            if item.page != 1:
                return []
            return self._parse_smolai_archive(await self._fetch(SMOLAI_ARCHIVE_URL))

        raise FatalRunError(f"No listing parser for {item.describe()}")

    async def fetch_article(self, ref: ArticleRef) -> ScrapedArticle:
        if ref.source == "aibase":
            url = f"{SOURCES['aibase'].base_url}/news/{ref.external_id}"
            return self._parse_aibase_article(ref.external_id, url, await self._fetch(url))
        if ref.source == "smolai":
            url = f"{SOURCES['smolai'].base_url}/issues/{ref.external_id}"
            return self._parse_smolai_article(ref.external_id, url, await self._fetch(url))
        raise FatalRunError(f"No article parser for source {ref.source}")

    # ── AIBase parsing ──────────────────────────────────────────

    @staticmethod
    def _parse_aibase_listing(html: str) -> list[ArticleRef]:
        soup = BeautifulSoup(html, "lxml")
        refs: list[ArticleRef] = []
        seen: set[str] = set()

        for card in soup.select("a[href^='/news/']"):
            external_id = card.get("href", "").removeprefix("/news/").strip("/")
            if not external_id.isdigit() or external_id in seen:
                continue
            seen.add(external_id)
            title_el = card.select_one("h2, h3, .title")
            title = title_el.get_text(strip=True) if title_el else f"Article {external_id}"
            refs.append(ArticleRef(source="aibase", external_id=external_id, title=title))

        logger.debug("AIBase: found %d articles on listing page", len(refs))
        return refs

    @staticmethod
    def _parse_aibase_article(external_id: str, url: str, html: str) -> ScrapedArticle:
        soup = BeautifulSoup(html, "lxml")

        title = _text(soup, "h1") or f"Article {external_id}"

        content = ""
        content_area = soup.select_one(
            "article, .article-content, .content, .post-content, main"
        )
        if content_area:
            content = "\n\n".join(
                p.get_text(strip=True)
                for p in content_area.find_all("p")
                if p.get_text(strip=True)
            )

        published_at: datetime | None = None
        date_el = soup.select_one("time, [datetime], .date, .published")
        if date_el is not None:
            raw = date_el.get("datetime") or date_el.get_text(strip=True)
            try:
                published_at = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            except ValueError:
                logger.debug("Could not parse date '%s' for %s", raw, url)

        view_count: int | None = None
        views = _text(soup, ".views, .view-count, .read-count")
        if views:
            digits = re.sub(r"\D", "", views)
            view_count = int(digits) if digits else None

        thumbnail = soup.select_one("meta[property='og:image']")
        tags = [
            t.get_text(strip=True)
            for t in soup.select(".tag, .tags a, [rel='tag']")
            if 0 < len(t.get_text(strip=True)) < 50
        ][:10]

        return ScrapedArticle(
            source="aibase",
            external_id=external_id,
            url=url,
            title=title,
            content=content,
            excerpt=_excerpt(content),
            author=_text(soup, ".author, .byline, [rel='author']"),
            published_at=published_at,
            tags=tags,
            view_count=view_count,
            thumbnail_url=thumbnail.get("content") if thumbnail else None,
        )

    # ── smol.ai parsing ─────────────────────────────────────────

    @staticmethod
    def _parse_smolai_archive(html: str) -> list[ArticleRef]:
        soup = BeautifulSoup(html, "lxml")
        refs: list[ArticleRef] = []
        seen: set[str] = set()

        for link in soup.select("a[href^='/issues/']"):
            slug = link.get("href", "").removeprefix("/issues/").strip("/")
            if not slug or slug == "issues" or slug in seen:
                continue
            seen.add(slug)
            refs.append(
                ArticleRef(source="smolai", external_id=slug, title=link.get_text(strip=True) or None)
            )

        logger.info("smol.ai: discovered %d articles from archive", len(refs))
        return refs

    @staticmethod
    def _date_from_slug(slug: str) -> datetime | None:
        # Slugs look like YY-MM-DD-title
        match = re.match(r"^(\d{2,4})-(\d{1,2})-(\d{1,2})", slug)
        if not match:
            return None
        year, month, day = (int(g) for g in match.groups())
        if year < 100:
            year += 2000
        try:
            return datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            return None

    @classmethod
    def _parse_smolai_article(cls, external_id: str, url: str, html: str) -> ScrapedArticle:
        soup = BeautifulSoup(html, "lxml")

        title = _text(soup, "h1")
        if not title:
            page_title = _text(soup, "title")
            title = page_title.split(" - ")[0].strip() if page_title else None
        if not title:
            title = " ".join(external_id.split("-")[3:]) or f"Issue {external_id}"

        content_area = soup.select_one("article.content-area")
        if content_area and content_area.get_text(strip=True):
            content = content_area.get_text("\n", strip=True)
        else:
            paragraphs = [
                p.get_text(strip=True)
                for p in soup.find_all("p")
                if len(p.get_text(strip=True)) > 20
            ]
            content = "\n\n".join(paragraphs) or "Content not available"

        tags = [
            t.get_text(strip=True)
            for t in soup.select("[data-pagefind-filter='company'], [data-pagefind-filter='topic']")
            if 0 < len(t.get_text(strip=True)) < 50
        ][:20]

        return ScrapedArticle(
            source="smolai",
            external_id=external_id,
            url=url,
            title=title,
            content=content,
            excerpt=_excerpt(content),
            author="smol.ai",
            published_at=cls._date_from_slug(external_id),
            tags=tags,
        )


scraper_service = ScraperService()
