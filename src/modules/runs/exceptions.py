class ScrapeError(Exception):
    """Base class for errors surfaced by the run control surface."""


class ConflictError(ScrapeError):
    def __init__(self, run_id) -> None:
        super().__init__(f"Scrape already running: {run_id}")
        self.run_id = run_id


class UnknownSourceError(ScrapeError):
    def __init__(self, source: str) -> None:
        super().__init__(f"Unknown source: {source}")
        self.source = source


class UnsupportedModeError(ScrapeError):
    pass


class InvalidRangeError(ScrapeError):
    pass


class NotRunningError(ScrapeError):
    def __init__(self) -> None:
        super().__init__("No scrape running")


class FatalRunError(ScrapeError):
    """Aborts the active run; the message is recorded as its last_error."""
