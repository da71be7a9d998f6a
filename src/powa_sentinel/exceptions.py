class SentinelError(Exception):
    pass


class ConfigError(SentinelError):
    pass


class SourceError(SentinelError):
    """Raised by a snapshot source when a cycle cannot produce a snapshot."""

    def __init__(self, message: str, cause: str | None = None) -> None:
        super().__init__(message)
        self.cause = cause or message


class DataUnavailable(SourceError):
    pass


class SchemaIncompatible(SourceError):
    pass


class PermissionDenied(SourceError):
    pass


class TransportError(SentinelError):
    pass


class TransportTransient(TransportError):
    def __init__(self, message: str, retry_after: float | None = None, parts_sent: int = 0) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.parts_sent = parts_sent


class TransportPermanent(TransportError):
    pass


class InternalInvariantViolation(SentinelError):
    pass
