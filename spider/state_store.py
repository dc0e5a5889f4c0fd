"""
URL State Store
===============
Durable per-URL lifecycle records, the source of truth for dedup and crash
recovery.  Records live in their own search-engine collection, keyed by
``url_id(url)``, with ``status`` filterable so queued URLs can be reloaded.

Any backend failure here is escalated: an unreachable store raises
``StateStoreCommunicationError``, anything else ``StateStoreError``.  The
Orchestrator treats both as run-fatal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from .errors import (
    BackendError,
    BackendUnavailableError,
    StateStoreCommunicationError,
    StateStoreError,
)
from .search_backend import SearchBackend
from .utils import url_id

logger = logging.getLogger(__name__)

_PAGE_SIZE = 1000
_FILTERABLE_FIELDS = ["status", "crawledAt", "id"]


class UrlStatus(str, Enum):
    QUEUED = "queued"
    CRAWLED = "crawled"
    ERROR = "error"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class UrlRecord:
    """One URL's lifecycle record.  ``id`` is always derived from ``url``."""
    url: str
    status: UrlStatus = UrlStatus.QUEUED
    crawled_at: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def id(self) -> str:
        return url_id(self.url)

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "id": self.id,
            "url": self.url,
            "status": self.status.value,
        }
        if self.crawled_at:
            doc["crawledAt"] = self.crawled_at
        if self.status is UrlStatus.ERROR and self.error_message:
            doc["errorMessage"] = self.error_message
        return doc

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "UrlRecord":
        return cls(
            url=doc["url"],
            status=UrlStatus(doc.get("status", UrlStatus.QUEUED.value)),
            crawled_at=doc.get("crawledAt"),
            error_message=doc.get("errorMessage"),
        )


class StateStore:
    """
    ``UrlRecord`` persistence over a ``SearchBackend`` collection.

    Usage::

        store = StateStore(backend, "apollo_crawled_urls")
        await store.ensure_collection()
        if not await store.exists(url):
            await store.upsert(UrlRecord(url=url, crawled_at=utc_now_iso()))
    """

    def __init__(
        self,
        backend: SearchBackend,
        collection: str = "apollo_crawled_urls",
        *,
        task_timeout_ms: int = 60_000,
        wait_for_writes: bool = True,
    ):
        self.backend = backend
        self.collection = collection
        self.task_timeout_ms = task_timeout_ms
        self.wait_for_writes = wait_for_writes

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    async def ensure_collection(self) -> None:
        """Create the URL collection (and its filterable fields) if absent."""
        try:
            created = await self.backend.create_collection_if_absent(self.collection, "id")
            await self.backend.configure_filterable_fields(self.collection, _FILTERABLE_FIELDS)
        except BackendError as exc:
            raise self._escalate("ensure_collection", exc) from exc
        state = "created" if created else "ready"
        logger.info(f"[STORE] URL collection '{self.collection}' {state}")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def exists(self, url: str) -> bool:
        """True iff a record exists for *url*, whatever its status."""
        try:
            doc = await self.backend.get_document(self.collection, url_id(url))
        except BackendError as exc:
            raise self._escalate(f"exists({url})", exc) from exc
        return doc is not None

    async def get(self, url: str) -> Optional[UrlRecord]:
        try:
            doc = await self.backend.get_document(self.collection, url_id(url))
        except BackendError as exc:
            raise self._escalate(f"get({url})", exc) from exc
        return UrlRecord.from_document(doc) if doc else None

    async def exists_batch(self, urls: Iterable[str]) -> Set[str]:
        """
        The subset of *urls* that already have a record.

        Uses one batched lookup; if that primitive fails (older engine,
        filter not configured, transient API error) it falls back to one
        ``exists`` call per URL.  A connectivity failure is not retried per
        URL; it escalates immediately.
        """
        unique = list(dict.fromkeys(urls))
        if not unique:
            return set()

        by_id: Dict[str, List[str]] = {}
        for u in unique:
            by_id.setdefault(url_id(u), []).append(u)
        try:
            docs = await self.backend.get_documents(self.collection, list(by_id))
        except BackendUnavailableError as exc:
            raise self._escalate("exists_batch", exc) from exc
        except BackendError as exc:
            logger.warning(
                f"[STORE] Batched existence check failed ({exc}); "
                f"falling back to {len(by_id)} single lookups"
            )
            found: Set[str] = set()
            for spellings in by_id.values():
                if await self.exists(spellings[0]):
                    found.update(spellings)
            return found

        # every spelling of a recorded id counts as recorded
        return {u for d in docs for u in by_id.get(d.get("id"), [])}

    async def query_by_status(self, status: UrlStatus) -> List[UrlRecord]:
        """All records with *status*, read page by page."""
        records: List[UrlRecord] = []
        offset = 0
        while True:
            try:
                page = await self.backend.filter_documents(
                    self.collection, "status", status.value,
                    offset=offset, limit=_PAGE_SIZE,
                )
            except BackendError as exc:
                raise self._escalate(f"query_by_status({status.value})", exc) from exc
            records.extend(UrlRecord.from_document(d) for d in page)
            if len(page) < _PAGE_SIZE:
                break
            offset += _PAGE_SIZE
        return records

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert(self, record: UrlRecord) -> None:
        await self.upsert_many([record])

    async def upsert_many(self, records: Iterable[UrlRecord]) -> None:
        """Idempotent batched write; last write wins per ``id``."""
        docs = [r.to_document() for r in records]
        if not docs:
            return
        try:
            task_uid = await self.backend.add_or_update_documents(self.collection, docs)
            if self.wait_for_writes:
                outcome = await self.backend.wait_for_task(task_uid, self.task_timeout_ms)
                if not outcome.succeeded:
                    raise StateStoreError(
                        f"State write task {task_uid} on '{self.collection}' "
                        f"ended as {outcome.status or 'unknown'}: {outcome.error}"
                    )
        except BackendError as exc:
            raise self._escalate("upsert", exc) from exc

    async def mark_crawled(self, url: str) -> None:
        await self.mark_crawled_many([url])

    async def mark_crawled_many(self, urls: Iterable[str]) -> None:
        now = utc_now_iso()
        await self.upsert_many(UrlRecord(url=u, status=UrlStatus.CRAWLED, crawled_at=now) for u in urls)

    async def mark_error(self, url: str, message: str) -> None:
        await self.upsert(UrlRecord(
            url=url,
            status=UrlStatus.ERROR,
            crawled_at=utc_now_iso(),
            error_message=message or "unknown error",
        ))

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _escalate(self, operation: str, exc: BackendError) -> StateStoreError:
        if isinstance(exc, BackendUnavailableError):
            logger.error(f"[STORE] {operation}: state store unreachable: {exc}")
            return StateStoreCommunicationError(f"{operation}: {exc}")
        logger.error(f"[STORE] {operation} failed: {exc}")
        return StateStoreError(f"{operation}: {exc}")
