class FetchError(Exception):
    """A single work item could not be fetched; the run carries on."""


class TransientFetchError(FetchError):
    """Worth retrying: timeouts, rate limiting, 5xx, connection failures."""


class ArticleNotFoundError(FetchError):
    """The item does not exist. Expected in sparse id ranges."""
