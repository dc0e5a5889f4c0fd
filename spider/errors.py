"""
Error Taxonomy
==============
Every failure the crawler can observe, as a closed set of types.

Per-URL failures are *values* (``FetchFailure`` tagged with a
``FailureKind``); they update a UrlRecord and the run continues.
Run-level failures are *exceptions*; they abort the Orchestrator loop.

Backend exceptions (``BackendApiError`` / ``BackendUnavailableError``) are
produced exactly once, at the search-backend boundary, from the Meilisearch
SDK's own exceptions.  Code deeper in the pipeline branches on the type (or
on the ``code`` captured there), never on message text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class FailureKind(str, Enum):
    """Why a single URL / article could not be turned into a document."""
    NAVIGATION_TIMEOUT = "navigation_timeout"
    NAVIGATION_ERROR = "navigation_error"
    NOT_FOUND = "not_found"          # HTTP 404
    SERVER_ERROR = "server_error"    # HTTP 5xx, transient, retried
    HTTP_ERROR = "http_error"        # any other HTTP >= 400
    PARSE_FAILURE = "parse_failure"  # no usable title (soft-404)

    @property
    def counts_as_not_found(self) -> bool:
        return self in (FailureKind.NOT_FOUND, FailureKind.PARSE_FAILURE)

    @property
    def is_transient(self) -> bool:
        return self is FailureKind.SERVER_ERROR


@dataclass(frozen=True)
class FetchFailure:
    """A per-URL failure.  Carries a human-readable cause."""
    url: str
    kind: FailureKind
    message: str
    status: Optional[int] = None

    def describe(self) -> str:
        return f"{self.kind.value}: {self.message}"


# ---------------------------------------------------------------------------
# Run-level exceptions
# ---------------------------------------------------------------------------

class CrawlerError(Exception):
    """Base class for all exceptions raised by the crawler."""


class BackendError(CrawlerError):
    """Raised by the search backend boundary."""


class BackendApiError(BackendError):
    """The search engine answered with an error payload."""

    def __init__(self, message: str, code: str = "", status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class BackendUnavailableError(BackendError):
    """The search engine could not be reached (or did not answer in time)."""


class StateStoreError(CrawlerError):
    """The URL state store failed.  Always run-fatal."""


class StateStoreCommunicationError(StateStoreError):
    """The URL state store could not be reached.  Always run-fatal."""


class IndexWriteError(CrawlerError):
    """A document chunk could not be written after all retries."""

    def __init__(self, collection: str, chunk_number: int, attempts: int, cause: str):
        super().__init__(
            f"Failed to write chunk {chunk_number} to '{collection}' "
            f"after {attempts} attempts: {cause}"
        )
        self.collection = collection
        self.chunk_number = chunk_number
        self.attempts = attempts
        self.cause = cause
