"""
Indexing Pipeline
=================
Chunked, retrying writer that pushes documents into a search collection.

For every chunk of ``batch_size`` documents:

    1. ensure the collection exists (once per collection per process)
    2. submit ``add_or_update_documents``
    3. wait for the engine task, bounded by ``task_timeout_ms``
    4. on any failure retry the same chunk, ``base_delay * 2**(attempt-1)``
       seconds apart, up to ``retries`` attempts in total

Upserts are keyed by the primary key, so replaying a chunk never duplicates
a document.  A chunk that still fails raises ``IndexWriteError``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .errors import BackendError, IndexWriteError
from .search_backend import SearchBackend
from .utils import RetryHandler

logger = logging.getLogger(__name__)


@dataclass
class CollectionSettings:
    """Index settings applied when a collection is first ensured."""
    primary_key: str = "id"
    filterable: List[str] = field(default_factory=list)
    sortable: List[str] = field(default_factory=list)


class _TaskFailed(Exception):
    """An engine task finished, but not as ``succeeded``."""


class IndexingPipeline:
    """
    Usage::

        pipeline = IndexingPipeline(backend, batch_size=1000, retries=3)
        await pipeline.save_batch("apollo_docs", documents)
    """

    def __init__(
        self,
        backend: SearchBackend,
        *,
        batch_size: int = 1000,
        retries: int = 3,
        base_delay: float = 1.0,
        task_timeout_ms: int = 60_000,
        collection_settings: Optional[Dict[str, CollectionSettings]] = None,
        retry_handler: Optional[RetryHandler] = None,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.backend = backend
        self.batch_size = batch_size
        self.task_timeout_ms = task_timeout_ms
        self.collection_settings = dict(collection_settings or {})
        self.retry = retry_handler or RetryHandler(max_attempts=retries, base_delay=base_delay)
        self._ensured: Set[str] = set()
        self._ensure_lock = asyncio.Lock()
        self.documents_written = 0

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------

    async def ensure_collection(self, collection: str) -> None:
        """Create and configure *collection* at most once per process."""
        if collection in self._ensured:
            return
        async with self._ensure_lock:
            if collection in self._ensured:
                return
            settings = self.collection_settings.get(collection, CollectionSettings())
            created = await self.backend.create_collection_if_absent(collection, settings.primary_key)
            if settings.filterable:
                await self.backend.configure_filterable_fields(collection, settings.filterable)
            if settings.sortable:
                await self.backend.configure_sortable_fields(collection, settings.sortable)
            self._ensured.add(collection)
            logger.info(f"[INDEX] Collection '{collection}' {'created' if created else 'ready'}")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def save_batch(self, collection: str, documents: Sequence[Dict[str, Any]]) -> int:
        """Write *documents* chunk by chunk.  Returns the number written."""
        documents = list(documents)
        if not documents:
            return 0

        chunks = [
            documents[i:i + self.batch_size]
            for i in range(0, len(documents), self.batch_size)
        ]
        written = 0
        for number, chunk in enumerate(chunks, 1):
            await self._write_chunk(collection, chunk, number, len(chunks))
            written += len(chunk)

        self.documents_written += written
        logger.info(f"[INDEX] Saved {written} documents to '{collection}' in {len(chunks)} chunk(s)")
        return written

    async def _write_chunk(self, collection: str, chunk: List[Dict[str, Any]], number: int, total: int) -> None:
        settings = self.collection_settings.get(collection, CollectionSettings())

        async def attempt() -> None:
            await self.ensure_collection(collection)
            task_uid = await self.backend.add_or_update_documents(collection, chunk, settings.primary_key)
            outcome = await self.backend.wait_for_task(task_uid, self.task_timeout_ms)
            if not outcome.succeeded:
                raise _TaskFailed(
                    f"task {task_uid} ended as {outcome.status or 'unknown'}: {outcome.error}"
                )

        try:
            await self.retry.run(
                attempt,
                retry_on=(BackendError, _TaskFailed),
                label=f"index chunk {number}/{total} -> {collection}",
            )
        except (BackendError, _TaskFailed) as exc:
            raise IndexWriteError(collection, number, self.retry.max_attempts, str(exc)) from exc
        logger.debug(f"[INDEX] Chunk {number}/{total} ({len(chunk)} docs) -> '{collection}'")


class DocumentBuffer:
    """
    Accumulates documents for one collection and flushes them through the
    pipeline once ``flush_size`` is reached (and on an explicit ``flush``).

    ``on_flushed`` is awaited with each flushed batch after its write
    succeeded; it is not called for a batch whose write raised.
    """

    def __init__(
        self,
        pipeline: IndexingPipeline,
        collection: str,
        flush_size: Optional[int] = None,
        on_flushed: Optional[Callable[[List[Dict[str, Any]]], Awaitable[Any]]] = None,
    ):
        self.pipeline = pipeline
        self.collection = collection
        self.flush_size = flush_size or pipeline.batch_size
        self.on_flushed = on_flushed
        self._docs: List[Dict[str, Any]] = []
        self.flushed = 0

    def __len__(self) -> int:
        return len(self._docs)

    async def add(self, document: Dict[str, Any]) -> int:
        """Buffer *document*; returns the number flushed (0 if none)."""
        self._docs.append(document)
        if len(self._docs) >= self.flush_size:
            return await self.flush()
        return 0

    async def flush(self) -> int:
        if not self._docs:
            return 0
        docs, self._docs = self._docs, []
        written = await self.pipeline.save_batch(self.collection, docs)
        self.flushed += written
        if self.on_flushed is not None:
            await self.on_flushed(docs)
        return written
