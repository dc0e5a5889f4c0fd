"""
Search Backend
==============
The full-text search engine, consumed as an external collaborator.

``SearchBackend`` is the contract the rest of the crawler depends on: both
persisted collections (URL state and documents) live behind it.
``MeiliSearchBackend`` implements it with the official ``meilisearch`` SDK.

The SDK is synchronous (``requests`` under the hood), so every call is run in
the default executor, and the event loop keeps driving browser fetches while a
state-store or index call is in flight.

SDK exceptions are translated here, once:

- ``MeilisearchCommunicationError`` / ``MeilisearchTimeoutError``
  → ``BackendUnavailableError``
- ``MeilisearchApiError`` → ``BackendApiError`` (with the API ``code``)
- "not found" answers for documents / indexes become ``None`` / ``False``
  return values rather than exceptions.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import meilisearch
from meilisearch.errors import (
    MeilisearchApiError,
    MeilisearchCommunicationError,
    MeilisearchError,
    MeilisearchTimeoutError,
)

from .errors import BackendApiError, BackendUnavailableError

logger = logging.getLogger(__name__)

_DOCUMENT_NOT_FOUND = "document_not_found"
_INDEX_NOT_FOUND = "index_not_found"


@dataclass(frozen=True)
class TaskOutcome:
    """Result of waiting on an asynchronous write."""
    task_uid: int
    succeeded: bool
    status: str = ""
    error: str = ""


@dataclass
class SearchPage:
    """One page of search results."""
    hits: List[Dict[str, Any]] = field(default_factory=list)
    estimated_total_hits: int = 0


class SearchBackend(ABC):
    """Operations the crawler needs from the search engine."""

    @abstractmethod
    async def create_collection_if_absent(self, name: str, primary_key: str = "id") -> bool:
        """Create *name* unless it exists.  Returns True if it was created."""

    @abstractmethod
    async def configure_filterable_fields(self, name: str, fields: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def configure_sortable_fields(self, name: str, fields: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def add_or_update_documents(
        self, name: str, documents: Sequence[Dict[str, Any]], primary_key: str = "id",
    ) -> int:
        """Submit an upsert.  Returns the task handle to wait on."""

    @abstractmethod
    async def wait_for_task(self, task_uid: int, timeout_ms: int) -> TaskOutcome:
        ...

    @abstractmethod
    async def get_document(self, name: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        """Return the document, or None if it does not exist."""

    @abstractmethod
    async def get_documents(self, name: str, ids: Sequence[Any]) -> List[Dict[str, Any]]:
        """Batched lookup: the subset of *ids* that exist."""

    @abstractmethod
    async def filter_documents(
        self, name: str, field_name: str, value: Any, *, offset: int = 0, limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        """Documents whose *field_name* equals *value*, one page at a time."""

    @abstractmethod
    async def list_documents(
        self, name: str, *, offset: int = 0, limit: int = 1000,
        fields: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def search(
        self, name: str, query: str = "", *, offset: int = 0, limit: int = 20,
        sort: Optional[Sequence[str]] = None, filter: Optional[str] = None,
    ) -> SearchPage:
        ...

    @abstractmethod
    async def document_count(self, name: str) -> int:
        ...


def _filter_literal(value: Any) -> str:
    """Render a value for a Meilisearch filter expression."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(str(value))


def _as_dict(document: Any) -> Dict[str, Any]:
    """The SDK returns ``Document`` objects (iterable over their fields)."""
    return dict(document)


class MeiliSearchBackend(SearchBackend):
    """
    ``SearchBackend`` over the ``meilisearch`` Python SDK.

    Usage::

        backend = MeiliSearchBackend("http://localhost:7700", api_key="...")
        created = await backend.create_collection_if_absent("apollo_docs")
    """

    def __init__(
        self,
        host: str = "http://localhost:7700",
        api_key: Optional[str] = None,
        *,
        request_timeout_s: Optional[int] = 30,
        client: Optional[meilisearch.Client] = None,
        poll_interval_ms: int = 100,
    ):
        self.host = host
        self._client = client or meilisearch.Client(host, api_key or None, timeout=request_timeout_s)
        self._poll_interval_ms = poll_interval_ms

    # ------------------------------------------------------------------
    # Executor bridge + error translation
    # ------------------------------------------------------------------

    async def _run(self, func: Callable, *args, **kwargs):
        loop = asyncio.get_running_loop()
        call = functools.partial(func, *args, **kwargs)
        try:
            return await loop.run_in_executor(None, call)
        except (MeilisearchCommunicationError, MeilisearchTimeoutError) as exc:
            raise BackendUnavailableError(f"Meilisearch unreachable at {self.host}: {exc}") from exc
        except MeilisearchApiError as exc:
            raise BackendApiError(
                str(exc),
                code=getattr(exc, "code", "") or "",
                status=getattr(exc, "status_code", None),
            ) from exc
        except MeilisearchError as exc:
            raise BackendApiError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def create_collection_if_absent(self, name: str, primary_key: str = "id") -> bool:
        try:
            await self._run(self._client.get_index, name)
            logger.debug(f"[MEILI] Index '{name}' exists")
            return False
        except BackendApiError as exc:
            if exc.code != _INDEX_NOT_FOUND:
                raise

        logger.info(f"[MEILI] Index '{name}' not found, creating (primary key: {primary_key})")
        task = await self._run(self._client.create_index, name, {"primaryKey": primary_key})
        outcome = await self.wait_for_task(task.task_uid, 60_000)
        if not outcome.succeeded:
            raise BackendApiError(
                f"Creating index '{name}' failed: {outcome.error}", code="index_creation_failed",
            )
        logger.info(f"[MEILI] Index '{name}' created")
        return True

    async def configure_filterable_fields(self, name: str, fields: Sequence[str]) -> None:
        index = self._client.index(name)
        task = await self._run(index.update_filterable_attributes, list(fields))
        await self.wait_for_task(task.task_uid, 60_000)

    async def configure_sortable_fields(self, name: str, fields: Sequence[str]) -> None:
        index = self._client.index(name)
        task = await self._run(index.update_sortable_attributes, list(fields))
        await self.wait_for_task(task.task_uid, 60_000)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def add_or_update_documents(
        self, name: str, documents: Sequence[Dict[str, Any]], primary_key: str = "id",
    ) -> int:
        index = self._client.index(name)
        task = await self._run(index.add_documents, list(documents), primary_key)
        return task.task_uid

    async def wait_for_task(self, task_uid: int, timeout_ms: int) -> TaskOutcome:
        task = await self._run(
            self._client.wait_for_task,
            task_uid,
            timeout_in_ms=timeout_ms,
            interval_in_ms=self._poll_interval_ms,
        )
        status = getattr(task, "status", "") or ""
        error = getattr(task, "error", None) or ""
        if isinstance(error, dict):
            error = error.get("message") or json.dumps(error)
        return TaskOutcome(
            task_uid=task_uid,
            succeeded=status == "succeeded",
            status=status,
            error=str(error),
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_document(self, name: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        index = self._client.index(name)
        try:
            document = await self._run(index.get_document, doc_id)
        except BackendApiError as exc:
            if exc.code == _DOCUMENT_NOT_FOUND:
                return None
            raise
        return _as_dict(document)

    async def get_documents(self, name: str, ids: Sequence[Any]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        index = self._client.index(name)
        expr = f"id IN [{', '.join(_filter_literal(i) for i in ids)}]"
        result = await self._run(
            index.get_documents, {"filter": expr, "limit": len(ids)},
        )
        return [_as_dict(d) for d in result.results]

    async def filter_documents(
        self, name: str, field_name: str, value: Any, *, offset: int = 0, limit: int = 1000,
    ) -> List[Dict[str, Any]]:
        index = self._client.index(name)
        expr = f"{field_name} = {_filter_literal(value)}"
        result = await self._run(
            index.get_documents, {"filter": expr, "offset": offset, "limit": limit},
        )
        return [_as_dict(d) for d in result.results]

    async def list_documents(
        self, name: str, *, offset: int = 0, limit: int = 1000,
        fields: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        index = self._client.index(name)
        params: Dict[str, Any] = {"offset": offset, "limit": limit}
        if fields:
            params["fields"] = list(fields)
        result = await self._run(index.get_documents, params)
        return [_as_dict(d) for d in result.results]

    async def search(
        self, name: str, query: str = "", *, offset: int = 0, limit: int = 20,
        sort: Optional[Sequence[str]] = None, filter: Optional[str] = None,
    ) -> SearchPage:
        index = self._client.index(name)
        params: Dict[str, Any] = {"offset": offset, "limit": limit}
        if sort:
            params["sort"] = list(sort)
        if filter:
            params["filter"] = filter
        raw = await self._run(index.search, query, params)
        return SearchPage(
            hits=list(raw.get("hits", [])),
            estimated_total_hits=int(raw.get("estimatedTotalHits", 0) or 0),
        )

    async def document_count(self, name: str) -> int:
        index = self._client.index(name)
        stats = await self._run(index.get_stats)
        return int(getattr(stats, "number_of_documents", 0) or 0)
