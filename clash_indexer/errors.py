class IndexerError(Exception):
    pass


class ConfigError(IndexerError, ValueError):
    pass


class LedgerError(IndexerError):
    """A provider call failed (timeout, rate limit, bad response)."""


class NotResolvable(IndexerError):
    """A game cannot be resolved yet; the record keeps its prior state."""


class MetadataError(NotResolvable):
    pass


class RevealError(IndexerError, ValueError):
    pass


class InvariantViolation(IndexerError):
    pass
