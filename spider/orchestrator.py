"""
Site Crawl Orchestrator
=======================
Drives one crawl run through a small state machine::

    IDLE ──► SEEDING ──► DRAINING ──► FINISHED
                 │            │
                 └────────────┴──► FINISHED (aborted)

SEEDING   ensure the collections, rebuild the frontier from the state store,
          and enqueue the seed URL if nothing was pending.
DRAINING  while the frontier has URLs or fetches are in flight: dispatch up
          to ``concurrency`` fetch tasks through a ``WorkerPool``; for each
          completion mark failures ``error``, enqueue new links and buffer
          the document.
FINISHED  flush the document buffer and report.  Reached exactly once.

A fetched page stays ``queued`` until the chunk holding its document has
been written; only then is it marked ``crawled``.  Pages still buffered when
a run aborts or dies are therefore fetched again by the next run.

Fetch tasks only fetch and extract.  Every state-store write, every frontier
mutation and every buffer operation happens in the dispatch loop itself, so
the frontier has a single writer.

A ``StateStoreError``, ``IndexWriteError`` or backend failure aborts the
run: in-flight fetches are cancelled, ``FINISHED`` is entered with
``aborted=True`` and the reason.  ``run_site_crawl`` wraps everything in a
``BrowserSession`` block, so the browser is closed on every path.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .blacklist import BlacklistFilter
from .errors import BackendError, CrawlerError, FailureKind, FetchFailure
from .extractor import ExtractedPage, extract
from .fetcher import BrowserSession, PageFetcher
from .frontier import Frontier
from .indexing import CollectionSettings, DocumentBuffer, IndexingPipeline
from .monitor import CrawlMonitor, CrawlStats
from .pool import WorkerPool
from .run_config import CrawlerRunConfig
from .search_backend import MeiliSearchBackend, SearchBackend
from .session import SessionCredentials, load_credentials
from .state_store import StateStore, utc_now_iso
from .utils import polite_delay, truncate, url_id

logger = logging.getLogger(__name__)

DOC_FIELDS_FILTERABLE = ["id", "url", "title", "content", "crawledAt"]
DOC_FIELDS_SORTABLE = ["crawledAt"]


class CrawlPhase(str, Enum):
    IDLE = "idle"
    SEEDING = "seeding"
    DRAINING = "draining"
    FINISHED = "finished"


@dataclass
class CrawlResult:
    """What ``SiteCrawler.run()`` hands back."""
    stats: CrawlStats
    phase: CrawlPhase
    aborted: bool = False
    abort_reason: str = ""
    document_count: Optional[int] = None


@dataclass
class _FetchResult:
    url: str
    page: Optional[ExtractedPage] = None
    failure: Optional[FetchFailure] = None


def page_document(page: ExtractedPage, crawled_at: Optional[str] = None) -> Dict[str, Any]:
    """Shape an extracted page as a document for the page collection."""
    return {
        "id": url_id(page.url),
        "url": page.url,
        "title": page.title,
        "content": page.content,
        "crawledAt": crawled_at or utc_now_iso(),
    }


class SiteCrawler:
    """
    One crawl run over one site.

    Usage::

        crawler = SiteCrawler(config, store=store, fetcher=fetcher, indexer=indexer)
        result = await crawler.run()
    """

    def __init__(
        self,
        config: CrawlerRunConfig,
        *,
        store: StateStore,
        fetcher: PageFetcher,
        indexer: IndexingPipeline,
        blacklist: Optional[BlacklistFilter] = None,
        credentials: Optional[SessionCredentials] = None,
        delay: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.config = config
        self.store = store
        self.fetcher = fetcher
        self.indexer = indexer
        self.blacklist = blacklist or BlacklistFilter(config.base_url, list(config.blacklisted_paths))
        self.credentials = credentials or SessionCredentials(user_agent=config.user_agent)
        self._delay = delay or (lambda: polite_delay(config.min_delay_s, config.max_delay_s))

        self.frontier = Frontier(store, self.blacklist)
        self.buffer = DocumentBuffer(
            indexer, config.docs_collection, config.batch_size, on_flushed=self._mark_indexed,
        )
        self.pool = WorkerPool(config.concurrency)
        self.monitor = CrawlMonitor(label="CRAWL", progress_every=config.progress_every)

        self.phase = CrawlPhase.IDLE
        self.aborted = False
        self.abort_reason = ""

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> CrawlResult:
        if self.phase is not CrawlPhase.IDLE:
            raise RuntimeError(f"SiteCrawler.run() called in phase {self.phase.value}")

        self.monitor.start()
        self.blacklist.log_rules()
        try:
            await self._seed()
            await self._drain()
            await self._flush_documents()
        except CrawlerError as exc:
            self.aborted = True
            self.abort_reason = f"{type(exc).__name__}: {exc}"
            logger.error(f"[CRAWL] Aborting run: {self.abort_reason}")
        finally:
            await self.pool.cancel_all()

        document_count = None if self.aborted else await self._document_count()
        return self._finish(document_count)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _seed(self) -> None:
        self.phase = CrawlPhase.SEEDING
        await self.store.ensure_collection()
        await self.indexer.ensure_collection(self.config.docs_collection)

        restored = await self.frontier.restore()
        if restored:
            logger.info(f"[CRAWL] Resuming with {len(restored)} queued URLs")
            return

        if await self.frontier.enqueue_if_new(self.config.base_url):
            logger.info(f"[CRAWL] Seeded frontier with {self.config.base_url}")
        else:
            logger.info(f"[CRAWL] Seed URL already recorded and nothing queued: {self.config.base_url}")

    async def _drain(self) -> None:
        self.phase = CrawlPhase.DRAINING
        while self.frontier or self.pool.active:
            while self.frontier and self.pool.has_capacity:
                url = self.frontier.take()
                self.pool.spawn(self._fetch_and_extract(url))
            self.monitor.record_in_flight(self.pool.active)

            for task in await self.pool.wait_any():
                await self._record(task.result())

    async def _flush_documents(self) -> None:
        written = await self.buffer.flush()
        self.monitor.record_indexed(written)

    def _finish(self, document_count: Optional[int]) -> CrawlResult:
        if self.phase is CrawlPhase.FINISHED:
            raise RuntimeError("Crawl already finished")
        self.phase = CrawlPhase.FINISHED
        stats = self.monitor.stop("aborted" if self.aborted else "completed")
        stats.peak_in_flight = max(stats.peak_in_flight, self.pool.peak)
        logger.info(
            f"[CRAWL] Finished: processed={stats.processed} ok={stats.succeeded} "
            f"not_found={stats.failed_not_found} failed={stats.failed_other}"
            + (f" (aborted: {self.abort_reason})" if self.aborted else "")
        )
        return CrawlResult(
            stats=stats,
            phase=self.phase,
            aborted=self.aborted,
            abort_reason=self.abort_reason,
            document_count=document_count,
        )

    # ------------------------------------------------------------------
    # Per-URL work
    # ------------------------------------------------------------------

    async def _fetch_and_extract(self, url: str) -> _FetchResult:
        """Runs inside a pool slot.  Never touches the store or the frontier."""
        await self._delay()
        outcome = await self.fetcher.fetch(url, self.credentials)
        if isinstance(outcome, FetchFailure):
            return _FetchResult(url=url, failure=outcome)

        try:
            page = extract(outcome.html, url, self.config.content_selectors)
        except Exception as exc:
            logger.exception(f"[CRAWL] Extraction crashed on {truncate(url, 60)}")
            return _FetchResult(url=url, failure=FetchFailure(
                url, FailureKind.PARSE_FAILURE, f"extraction error: {exc}",
            ))
        if page is None:
            return _FetchResult(url=url, failure=FetchFailure(
                url, FailureKind.PARSE_FAILURE, "page has no title (soft 404)", outcome.status,
            ))
        return _FetchResult(url=url, page=page)

    async def _record(self, result: _FetchResult) -> None:
        """Apply one completed fetch: status update, link enqueue, buffering."""
        if result.failure is not None:
            await self.store.mark_error(result.url, result.failure.describe())
            self.monitor.record_failure(result.failure.kind)
            return

        page = result.page
        candidates = self.blacklist.filter_candidates(page.links)
        added = await self.frontier.enqueue_batch(candidates)
        self.monitor.record_enqueued(len(added))

        written = await self.buffer.add(page_document(page))
        self.monitor.record_indexed(written)
        self.monitor.record_success()
        logger.debug(
            f"[CRAWL] {truncate(result.url, 60)}: '{truncate(page.title, 40)}' "
            f"links={len(page.links)} new={len(added)} frontier={len(self.frontier)}"
        )

    async def _mark_indexed(self, documents: List[Dict[str, Any]]) -> None:
        """A page becomes ``crawled`` only once its document is in the index."""
        await self.store.mark_crawled_many(doc["url"] for doc in documents)

    async def _document_count(self) -> Optional[int]:
        try:
            count = await self.indexer.backend.document_count(self.config.docs_collection)
        except BackendError as exc:
            logger.warning(f"[CRAWL] Could not read document count: {exc}")
            return None
        logger.info(f"[CRAWL] '{self.config.docs_collection}' now holds {count} documents")
        return count


# ---------------------------------------------------------------------------
# Production wiring
# ---------------------------------------------------------------------------

def build_backend(config: CrawlerRunConfig) -> MeiliSearchBackend:
    return MeiliSearchBackend(config.meili_host, config.meili_api_key)


def build_site_indexer(config: CrawlerRunConfig, backend: SearchBackend) -> IndexingPipeline:
    return IndexingPipeline(
        backend,
        batch_size=config.batch_size,
        retries=config.index_retries,
        base_delay=config.retry_base_delay_s,
        task_timeout_ms=config.task_timeout_ms,
        collection_settings={
            config.docs_collection: CollectionSettings(
                filterable=DOC_FIELDS_FILTERABLE,
                sortable=DOC_FIELDS_SORTABLE,
            ),
        },
    )


async def run_site_crawl(
    config: CrawlerRunConfig,
    credentials: Optional[SessionCredentials] = None,
) -> CrawlResult:
    """Wire Meilisearch, Playwright and the crawler together and run once."""
    backend = build_backend(config)
    store = StateStore(backend, config.urls_collection, task_timeout_ms=config.task_timeout_ms)
    indexer = build_site_indexer(config, backend)
    credentials = credentials or load_credentials(
        config.cookies_file,
        max_age_days=config.cookie_max_age_days,
        user_agent=config.user_agent,
    )

    async with BrowserSession(headless=config.headless) as browser:
        fetcher = PageFetcher(
            browser,
            timeout_ms=config.nav_timeout_ms,
            max_attempts=config.fetch_retries,
            retry_base_delay=config.retry_base_delay_s,
        )
        crawler = SiteCrawler(
            config,
            store=store,
            fetcher=fetcher,
            indexer=indexer,
            credentials=credentials,
        )
        return await crawler.run()
