"""
Exception hierarchy for the classification engine.

Only ExtractionError escapes ClassificationEngine.analyze*; every other
error is caught at the stage that raised it and downgraded.
"""


class DocSorterError(Exception):
    """Base class for engine errors."""


class ExtractionError(DocSorterError):
    """The upstream text extractor could not produce text for a document."""


class DetectorError(DocSorterError):
    """An auxiliary detector (language, watermark, signature) failed."""


class CacheError(DocSorterError):
    """Snapshot read or write failed. The cache keeps running in memory."""


class GatewayError(DocSorterError):
    """Base class for inference gateway failures."""


class CapacityExceeded(GatewayError):
    """All concurrency slots are taken. Raised immediately, never retried."""


class GatewayTimeout(GatewayError):
    """A single request exceeded the per-request timeout."""


class TransientNetworkError(GatewayError):
    """Connection failure, rate limit or 5xx response."""


class MalformedResponse(GatewayError):
    """The backend answered but the payload could not be used."""


class RetriesExhausted(GatewayError):
    """Every attempt failed with a retryable error."""

    def __init__(self, message: str, attempts: int, last_error: Exception = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
