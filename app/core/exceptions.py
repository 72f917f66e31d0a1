"""Domain exceptions shared across the discovery services."""


class ReelshelfError(Exception):
    """Base exception that keeps a reference to the underlying failure."""

    def __init__(self, message: str, original_exception: Exception | None = None):
        super().__init__(message)
        self.original_exception = original_exception


class StoreError(ReelshelfError):
    """A persisted store (jobs, episodes, series, cache rows) could not be read or written."""


class ProviderError(ReelshelfError):
    """The metadata provider could not be reached or answered with garbage."""


class DiscoveryError(ReelshelfError):
    """A discovery job cannot be executed as requested."""


class TMDBError(ReelshelfError):
    """Domain exception for TMDB failures."""
