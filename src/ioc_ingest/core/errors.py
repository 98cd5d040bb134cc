"""
Exceptions raised by the ingestion pipeline.
"""

from typing import Optional


class IngestError(Exception):
    """Base class for ingestion errors."""


class FetchError(IngestError):
    """A feed could not be retrieved."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class PayloadError(IngestError):
    """A retrieved payload was malformed or unusable."""


class StoreError(IngestError):
    """The indicator store rejected a write or query."""


class UnknownSourceError(IngestError, KeyError):
    """No catalog source has the requested key."""

    def __str__(self) -> str:
        return f"Source not found: {self.args[0]}"


class SourceDisabledError(IngestError):
    """The requested source exists but is disabled."""


class UnknownNormalizerError(IngestError, KeyError):
    """No normalizer task has the requested name."""

    def __str__(self) -> str:
        return str(self.args[0])
