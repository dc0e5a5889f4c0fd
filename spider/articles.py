"""
Community Article Crawler
=========================
Articles live at ``/community/article/{id}`` with sequential numeric IDs and
are not reachable through the site crawl (that path is blacklisted there).
They are enumerated by ID instead and fetched as static HTML with
``requests``; no browser is needed.

Two jobs:

- ``discover_new()``    start after the highest indexed ID and walk upward
                         in batches until ``article_max_id``, or until
                         ``consecutive_failure_limit`` IDs in a row turn out
                         to be missing.
- ``refresh_existing()`` re-fetch every indexed ID and upsert the result
                         (view and like counts change over time).

Each batch's successes are written through the ``IndexingPipeline`` before
the next batch starts.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import requests

from .errors import BackendApiError, CrawlerError, FailureKind, FetchFailure
from .extractor import ArticleSelectors, extract_article
from .indexing import CollectionSettings, IndexingPipeline
from .monitor import CrawlMonitor, CrawlStats
from .pool import WorkerPool
from .run_config import CrawlerRunConfig
from .search_backend import MeiliSearchBackend, SearchBackend
from .session import SessionCredentials, load_credentials
from .utils import RetryHandler, polite_delay

logger = logging.getLogger(__name__)

ARTICLE_FIELDS_FILTERABLE = ["id", "publishTimestamp"]
ARTICLE_FIELDS_SORTABLE = ["id", "publishTimestamp"]

# outcomes that look like "no article behind this ID" for the stop rule;
# this site answers 5xx for unpublished IDs
_MISSING_KINDS = frozenset({FailureKind.NOT_FOUND, FailureKind.PARSE_FAILURE, FailureKind.SERVER_ERROR})


@dataclass
class ArticleOutcome:
    article_id: int
    document: Optional[Dict[str, Any]] = None
    failure: Optional[FetchFailure] = None


@dataclass
class ArticleRunResult:
    stats: CrawlStats
    aborted: bool = False
    abort_reason: str = ""
    stopped_on_failures: bool = False
    next_id: Optional[int] = None


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

class ArticleFetcher:
    """
    Static HTTP fetch + parse of one article.

    ``requests`` is blocking, so each GET runs in the default executor.
    Network errors and HTTP 5xx are retried with exponential backoff; the
    final outcome is always an ``ArticleOutcome``.
    """

    def __init__(
        self,
        url_template: str,
        credentials: Optional[SessionCredentials] = None,
        *,
        timeout_s: float = 30,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        retry_handler: Optional[RetryHandler] = None,
        selectors: Optional[ArticleSelectors] = None,
    ):
        self.url_template = url_template
        self.credentials = credentials or SessionCredentials()
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.selectors = selectors or ArticleSelectors()
        self.retry = retry_handler or RetryHandler(max_attempts=max_attempts, base_delay=retry_base_delay)

    def url_for(self, article_id: int) -> str:
        return self.url_template.format(id=article_id)

    async def fetch(self, article_id: int) -> ArticleOutcome:
        url = self.url_for(article_id)
        try:
            return await self.retry.run(
                lambda: self._fetch_once(article_id, url),
                should_retry=lambda o: o.failure is not None and o.failure.kind.is_transient,
                retry_on=(requests.RequestException,),
                label=f"article {article_id}",
            )
        except requests.Timeout as exc:
            kind = FailureKind.NAVIGATION_TIMEOUT
            message = f"timed out after {self.timeout_s}s: {exc}"
        except requests.RequestException as exc:
            kind = FailureKind.NAVIGATION_ERROR
            message = f"network error: {exc}"
        logger.warning(f"[ARTICLES] ID {article_id}: {message}")
        return ArticleOutcome(article_id, failure=FetchFailure(url, kind, message))

    async def _fetch_once(self, article_id: int, url: str) -> ArticleOutcome:
        loop = asyncio.get_running_loop()
        headers = self.credentials.headers()

        def _sync_fetch():
            return self.session.get(url, headers=headers, timeout=self.timeout_s)

        response = await loop.run_in_executor(None, _sync_fetch)
        status = response.status_code
        if status == 404:
            return ArticleOutcome(article_id, failure=FetchFailure(url, FailureKind.NOT_FOUND, "HTTP 404", status))
        if status >= 500:
            return ArticleOutcome(article_id, failure=FetchFailure(
                url, FailureKind.SERVER_ERROR, f"HTTP {status} server error", status,
            ))
        if status >= 400:
            return ArticleOutcome(article_id, failure=FetchFailure(url, FailureKind.HTTP_ERROR, f"HTTP {status}", status))

        article = extract_article(response.text, self.selectors)
        if article is None:
            return ArticleOutcome(article_id, failure=FetchFailure(
                url, FailureKind.PARSE_FAILURE, "empty <h1> (soft 404)", status,
            ))
        return ArticleOutcome(article_id, document={
            "id": article_id,
            "url": url,
            "title": article.title,
            "content": article.content,
            "publishTimestamp": article.publish_timestamp,
            "publishDateStr": article.publish_date_str,
            "author": article.author,
            "views": article.views,
            "likes": article.likes,
        })


# ---------------------------------------------------------------------------
# Crawler
# ---------------------------------------------------------------------------

class ArticleCrawler:
    """
    Usage::

        crawler = ArticleCrawler(config, backend=backend, indexer=indexer, fetcher=fetcher)
        result = await crawler.discover_new()
    """

    def __init__(
        self,
        config: CrawlerRunConfig,
        *,
        backend: SearchBackend,
        indexer: IndexingPipeline,
        fetcher: ArticleFetcher,
        delay: Optional[Callable[[], Awaitable[Any]]] = None,
    ):
        self.config = config
        self.backend = backend
        self.indexer = indexer
        self.fetcher = fetcher
        self.collection = config.articles_collection
        self.pool = WorkerPool(config.article_concurrency)
        self._delay = delay or (lambda: polite_delay(config.min_delay_s, config.min_delay_s))

    # ------------------------------------------------------------------
    # Index queries
    # ------------------------------------------------------------------

    async def max_indexed_id(self) -> Optional[int]:
        """Highest article ID in the collection, or None if unknown/empty."""
        try:
            page = await self.backend.search(self.collection, "", limit=1, sort=["id:desc"])
        except BackendApiError as exc:
            logger.warning(f"[ARTICLES] Could not read the highest indexed ID: {exc}")
            return None
        if not page.hits:
            return None
        return int(page.hits[0]["id"])

    async def list_indexed_ids(self) -> List[int]:
        """Every indexed article ID, read page by page up to the configured cap."""
        ids: List[int] = []
        offset = 0
        page_size = self.config.refresh_page_size
        cap = self.config.refresh_max_documents
        while len(ids) < cap:
            docs = await self.backend.list_documents(
                self.collection, offset=offset, limit=page_size, fields=["id"],
            )
            if not docs:
                break
            ids.extend(int(d["id"]) for d in docs)
            offset += page_size
        if len(ids) >= cap:
            logger.warning(f"[ARTICLES] Reached the {cap} document cap; some IDs may be missing")
            ids = ids[:cap]
        return ids

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def discover_new(self) -> ArticleRunResult:
        monitor = CrawlMonitor(label="ARTICLES", progress_every=self.config.progress_every)
        monitor.start()
        result = ArticleRunResult(stats=monitor.stats)
        try:
            await self.indexer.ensure_collection(self.collection)
            highest = await self.max_indexed_id()
            start_id = max(
                highest if highest is not None else self.config.article_start_id - 1,
                self.config.article_start_id - 1,
            ) + 1
            logger.info(
                f"[ARTICLES] Discovering from ID {start_id} to {self.config.article_max_id} "
                f"(concurrency {self.config.article_concurrency})"
            )

            streak = 0
            next_id = start_id
            batch_size = self.config.article_batch_size
            for batch_start in range(start_id, self.config.article_max_id + 1, batch_size):
                batch_end = min(batch_start + batch_size - 1, self.config.article_max_id)
                outcomes = await self.pool.map(self.fetcher.fetch, range(batch_start, batch_end + 1))

                documents = []
                for outcome in outcomes:
                    if outcome.document is not None:
                        documents.append(outcome.document)
                        monitor.record_success()
                        streak = 0
                    else:
                        monitor.record_failure(outcome.failure.kind)
                        if outcome.failure.kind in _MISSING_KINDS:
                            streak += 1

                await self._save(documents, monitor)
                next_id = batch_end + 1
                logger.info(
                    f"[ARTICLES] IDs {batch_start}-{batch_end}: {len(documents)} found, "
                    f"missing streak {streak}"
                )

                if streak >= self.config.consecutive_failure_limit:
                    logger.info(
                        f"[ARTICLES] {streak} consecutive missing IDs; stopping "
                        f"({monitor.stats.failed_not_found} not found, "
                        f"{monitor.stats.failed_other} other errors)"
                    )
                    result.stopped_on_failures = True
                    break
                await self._delay()
            result.next_id = next_id
        except CrawlerError as exc:
            result.aborted = True
            result.abort_reason = f"{type(exc).__name__}: {exc}"
            logger.error(f"[ARTICLES] Aborting discovery: {result.abort_reason}")

        result.stats = monitor.stop(_stop_reason(result))
        result.stats.peak_in_flight = self.pool.peak
        return result

    async def refresh_existing(self) -> ArticleRunResult:
        monitor = CrawlMonitor(label="ARTICLES", progress_every=self.config.progress_every)
        monitor.start()
        result = ArticleRunResult(stats=monitor.stats)
        try:
            await self.indexer.ensure_collection(self.collection)
            ids = await self.list_indexed_ids()
            batch_size = self.config.refresh_batch_size
            total_batches = (len(ids) + batch_size - 1) // batch_size
            logger.info(f"[ARTICLES] Refreshing {len(ids)} indexed articles in {total_batches} batch(es)")

            for number, start in enumerate(range(0, len(ids), batch_size), 1):
                batch = ids[start:start + batch_size]
                outcomes = await self.pool.map(self.fetcher.fetch, batch)
                documents = []
                for outcome in outcomes:
                    if outcome.document is not None:
                        documents.append(outcome.document)
                        monitor.record_success()
                    else:
                        monitor.record_failure(outcome.failure.kind)
                await self._save(documents, monitor)
                logger.info(f"[ARTICLES] Batch {number}/{total_batches}: {len(documents)}/{len(batch)} refreshed")
                if number < total_batches:
                    await self._delay()
        except CrawlerError as exc:
            result.aborted = True
            result.abort_reason = f"{type(exc).__name__}: {exc}"
            logger.error(f"[ARTICLES] Aborting refresh: {result.abort_reason}")

        result.stats = monitor.stop(_stop_reason(result))
        result.stats.peak_in_flight = self.pool.peak
        return result

    async def _save(self, documents: List[Dict[str, Any]], monitor: CrawlMonitor) -> None:
        if not documents:
            return
        written = await self.indexer.save_batch(self.collection, documents)
        monitor.record_indexed(written)


def _stop_reason(result: ArticleRunResult) -> str:
    if result.aborted:
        return "aborted"
    if result.stopped_on_failures:
        return "consecutive failure limit"
    return "completed"


# ---------------------------------------------------------------------------
# Production wiring
# ---------------------------------------------------------------------------

def build_article_crawler(
    config: CrawlerRunConfig,
    backend: Optional[SearchBackend] = None,
    credentials: Optional[SessionCredentials] = None,
) -> ArticleCrawler:
    backend = backend or MeiliSearchBackend(config.meili_host, config.meili_api_key)
    indexer = IndexingPipeline(
        backend,
        batch_size=config.batch_size,
        retries=config.index_retries,
        base_delay=config.retry_base_delay_s,
        task_timeout_ms=config.task_timeout_ms,
        collection_settings={
            config.articles_collection: CollectionSettings(
                filterable=ARTICLE_FIELDS_FILTERABLE,
                sortable=ARTICLE_FIELDS_SORTABLE,
            ),
        },
    )
    credentials = credentials or load_credentials(
        config.cookies_file,
        max_age_days=config.cookie_max_age_days,
        user_agent=config.user_agent,
    )
    fetcher = ArticleFetcher(
        config.article_url_template,
        credentials,
        timeout_s=config.article_request_timeout_s,
        max_attempts=config.fetch_retries,
        retry_base_delay=config.retry_base_delay_s,
    )
    return ArticleCrawler(config, backend=backend, indexer=indexer, fetcher=fetcher)


async def run_article_discovery(config: CrawlerRunConfig) -> ArticleRunResult:
    return await build_article_crawler(config).discover_new()


async def run_article_refresh(config: CrawlerRunConfig) -> ArticleRunResult:
    return await build_article_crawler(config).refresh_existing()
