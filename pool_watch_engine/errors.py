from __future__ import annotations


class PoolWatchError(Exception):
    """Base exception for the pool watcher."""

    def is_retryable(self) -> bool:
        return False


class ConfigError(PoolWatchError):
    """Missing or malformed settings. Fatal at start-up only."""


class TransportError(PoolWatchError):
    """Gateway unreachable, timed out, or returned a malformed response."""

    def __init__(self, message: str, *, operation: str | None = None):
        super().__init__(message)
        self.operation = operation

    def __str__(self):
        base = super().__str__()
        return f"[{self.operation}] {base}" if self.operation else base

    def is_retryable(self) -> bool:
        return True


class TransactionNotFound(TransportError):
    """The node has no confirmed transaction for this signature (yet)."""

    def __init__(self, signature: str):
        super().__init__(f"transaction {signature} not found", operation="get_transaction")
        self.signature = signature


class ExtractionError(PoolWatchError):
    """A candidate was fetched but could not be decoded into a pool event."""

    def __init__(self, message: str, *, signature: str | None = None):
        super().__init__(message)
        self.signature = signature


class IncompleteBalances(ExtractionError):
    """Valid transaction, but it does not represent a two-sided pool creation."""


class NoSigner(ExtractionError):
    pass


class MissingSignature(ExtractionError):
    pass


class MalformedRecord(ExtractionError):
    """A field was present but had the wrong type or an out-of-range value."""


class DetectorBroken(PoolWatchError):
    """The detector's source can no longer produce candidates."""

    def is_retryable(self) -> bool:
        return True


class SubscriptionClosed(DetectorBroken):
    pass


class RetryExhausted(PoolWatchError):
    def __init__(self, message: str, *, attempts: int, last_error: BaseException | None = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class PersistenceError(PoolWatchError):
    """The event log could not be written. Data may be lost."""
