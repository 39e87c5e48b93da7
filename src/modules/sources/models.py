from dataclasses import dataclass, field
from enum import Enum


class FetchMode(str, Enum):
    PAGINATION = "pagination"
    RANGE = "range"


class ListingKind(str, Enum):
    PAGES = "pages"
    ARCHIVE = "archive"


@dataclass(frozen=True)
class SourceInfo:
    id: str
    name: str
    base_url: str
    listing: ListingKind
    modes: frozenset[FetchMode]
    aliases: tuple[str, ...] = field(default=())

    def supports_mode(self, mode: FetchMode) -> bool:
        return mode in self.modes


SOURCES: dict[str, SourceInfo] = {s.id: s for s in [
    SourceInfo(
        "aibase", "AIBase", "https://news.aibase.com",
        ListingKind.PAGES, frozenset({FetchMode.PAGINATION, FetchMode.RANGE}),
    ),
    SourceInfo(
        "smolai", "smol.ai", "https://news.smol.ai",
        ListingKind.ARCHIVE, frozenset({FetchMode.PAGINATION}),
        aliases=("smol", "smol.ai"),
    ),
]}

DEFAULT_SOURCE = "aibase"


def resolve_source(name: str) -> SourceInfo | None:
    key = name.strip().lower()
    if key in SOURCES:
        return SOURCES[key]
    for source in SOURCES.values():
        if key in source.aliases:
            return source
    return None
