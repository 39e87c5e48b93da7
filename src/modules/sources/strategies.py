from abc import ABC, abstractmethod

from src.modules.runs.exceptions import InvalidRangeError, UnsupportedModeError
from src.modules.sources.models import FetchMode, ListingKind, SourceInfo
from src.modules.sources.schemas import WorkItem, WorkItemKind


class SourceStrategy(ABC):
    """Enumerates the work items of one run.

    Strategies are pure: the next item depends only on the previous one, so
    the drive loop owns all progress state.
    """

    mode: FetchMode
    stops_at_first_known: bool = False

    def __init__(self, source: SourceInfo) -> None:
        self.source = source
        if not self.supports_mode(self.mode):
            raise UnsupportedModeError(
                f"{self.mode.value} mode is not supported for {source.name}"
            )

    def supports_mode(self, mode: FetchMode) -> bool:
        return mode is self.mode and self.source.supports_mode(mode)

    @property
    @abstractmethod
    def total_pages(self) -> int | None: ...

    @abstractmethod
    def next_item(self, previous: WorkItem | None) -> WorkItem | None: ...


class PaginationStrategy(SourceStrategy):
    mode = FetchMode.PAGINATION
    kind = WorkItemKind.PAGE

    def __init__(self, source: SourceInfo, max_pages: int) -> None:
        super().__init__(source)
        if max_pages < 1:
            raise InvalidRangeError("max_pages must be at least 1")
        self.max_pages = max_pages

    @property
    def total_pages(self) -> int | None:
        return self.max_pages

    def next_item(self, previous: WorkItem | None) -> WorkItem | None:
        page = 1 if previous is None else previous.page + 1
        if page > self.max_pages:
            return None
        return WorkItem(kind=self.kind, source=self.source.id, page=page)


class ArchiveStrategy(PaginationStrategy):
    """Walks archive index pages; archives list newest entries first."""

    kind = WorkItemKind.ARCHIVE
    stops_at_first_known = True

    @property
    def total_pages(self) -> int | None:
        return None


class RangeStrategy(SourceStrategy):
    mode = FetchMode.RANGE

    def __init__(
        self, source: SourceInfo, start_id: int, end_id: int, max_size: int | None = None
    ) -> None:
        super().__init__(source)
        if start_id < 0:
            raise InvalidRangeError("start_id must not be negative")
        if start_id > end_id:
            raise InvalidRangeError(
                f"start_id ({start_id}) must not be greater than end_id ({end_id})"
            )
        size = end_id - start_id + 1
        if max_size is not None and size > max_size:
            raise InvalidRangeError(
                f"Range too large: {size} ids, maximum {max_size} per run"
            )
        self.start_id = start_id
        self.end_id = end_id

    @property
    def total_pages(self) -> int | None:
        return self.end_id - self.start_id + 1

    def next_item(self, previous: WorkItem | None) -> WorkItem | None:
        next_id = self.start_id if previous is None else int(previous.external_id) + 1
        if next_id > self.end_id:
            return None
        return WorkItem(
            kind=WorkItemKind.ARTICLE, source=self.source.id, external_id=str(next_id)
        )


def build_strategy(
    source: SourceInfo,
    mode: FetchMode,
    *,
    max_pages: int | None = None,
    start_id: int | None = None,
    end_id: int | None = None,
    max_range_size: int | None = None,
) -> SourceStrategy:
    """Pick the strategy for a source/mode pair, validating before any run exists."""
    if not source.supports_mode(mode):
        raise UnsupportedModeError(
            f"{mode.value} mode is not supported for {source.name}"
        )
    if mode is FetchMode.RANGE:
        if start_id is None or end_id is None:
            raise InvalidRangeError("Range mode requires start_id and end_id")
        return RangeStrategy(source, start_id, end_id, max_size=max_range_size)
    if max_pages is None:
        raise InvalidRangeError("Pagination mode requires max_pages")
    if source.listing is ListingKind.ARCHIVE:
        return ArchiveStrategy(source, max_pages)
    return PaginationStrategy(source, max_pages)
