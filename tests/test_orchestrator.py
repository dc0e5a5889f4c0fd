"""
Tests for orchestrator.py: full passes over a fake site, the concurrency
bound, crash recovery and fatal aborts.
"""

import asyncio

import pytest

from conftest import FakeSiteFetcher, html_page, no_sleep

from spider.errors import BackendApiError, BackendUnavailableError
from spider.indexing import IndexingPipeline
from spider.orchestrator import CrawlPhase, SiteCrawler, build_site_indexer, page_document
from spider.extractor import ExtractedPage
from spider.run_config import CrawlerRunConfig
from spider.state_store import StateStore, UrlRecord, UrlStatus
from spider.utils import RetryHandler, url_id

HOST = "https://apollo.baidu.com"
A = f"{HOST}/docs/a.html"
B = f"{HOST}/docs/b.html"
C = f"{HOST}/workspace/c.html"


async def _no_delay():
    return 0.0


def _crawler(backend, pages, *, concurrency=2, batch_size=1000, index_retries=3, fetcher=None, **cfg):
    config = CrawlerRunConfig(
        base_url=A,
        blacklisted_paths=["/workspace"],
        concurrency=concurrency,
        batch_size=batch_size,
        min_delay_s=0,
        max_delay_s=0,
        **cfg,
    )
    store = StateStore(backend, config.urls_collection)
    indexer = IndexingPipeline(
        backend,
        batch_size=batch_size,
        retry_handler=RetryHandler(max_attempts=index_retries, sleep=no_sleep),
    )
    fetcher = fetcher or FakeSiteFetcher(pages)
    crawler = SiteCrawler(config, store=store, fetcher=fetcher, indexer=indexer, delay=_no_delay)
    return crawler, fetcher, config


class TestFullPass:

    def test_seed_links_allowed_and_blacklisted(self, backend):
        pages = {
            A: html_page("Page A", [B, C]),
            B: html_page("Page B", [A]),
            C: html_page("Page C"),
        }
        crawler, fetcher, config = _crawler(backend, pages)
        result = asyncio.run(crawler.run())

        urls = backend.docs(config.urls_collection)
        assert urls[url_id(A)]["status"] == "crawled"
        assert urls[url_id(B)]["status"] == "crawled"
        assert url_id(C) not in urls
        assert set(backend.docs(config.docs_collection)) == {url_id(A), url_id(B)}
        assert C not in fetcher.fetched

        assert result.phase is CrawlPhase.FINISHED
        assert not result.aborted
        assert result.stats.processed == 2
        assert result.stats.succeeded == 2
        assert result.document_count == 2

    def test_document_shape(self, backend):
        pages = {A: html_page("Page A", body="hello")}
        crawler, _, config = _crawler(backend, pages)
        asyncio.run(crawler.run())
        doc = backend.docs(config.docs_collection)[url_id(A)]
        assert doc["url"] == A
        assert doc["title"] == "Page A"
        assert "hello" in doc["content"]
        assert doc["crawledAt"]

    def test_failures_recorded_and_counted(self, backend):
        missing = f"{HOST}/docs/missing.html"
        untitled = f"{HOST}/docs/untitled.html"
        pages = {
            A: html_page("Page A", [missing, untitled]),
            untitled: html_page(""),
        }
        crawler, _, config = _crawler(backend, pages)
        result = asyncio.run(crawler.run())

        urls = backend.docs(config.urls_collection)
        assert urls[url_id(missing)]["status"] == "error"
        assert "not_found" in urls[url_id(missing)]["errorMessage"]
        assert urls[url_id(untitled)]["status"] == "error"
        assert result.stats.failed_not_found == 2
        assert result.stats.failed_other == 0
        assert set(backend.docs(config.docs_collection)) == {url_id(A)}

    def test_second_run_does_nothing_new(self, backend):
        pages = {A: html_page("Page A", [B]), B: html_page("Page B")}
        crawler, _, _ = _crawler(backend, pages)
        asyncio.run(crawler.run())

        again, fetcher, _ = _crawler(backend, pages)
        result = asyncio.run(again.run())
        assert fetcher.fetched == []
        assert result.stats.processed == 0
        assert not result.aborted

    def test_run_only_once(self, backend):
        crawler, _, _ = _crawler(backend, {A: html_page("A")})
        asyncio.run(crawler.run())
        with pytest.raises(RuntimeError):
            asyncio.run(crawler.run())


class TestConcurrency:

    @pytest.mark.parametrize("k", [1, 3, 5])
    def test_bound_holds_under_random_completion_order(self, backend, k):
        # A links to 30 leaf pages, each leaf links to a few siblings
        leaves = [f"{HOST}/docs/leaf{i}.html" for i in range(30)]
        pages = {A: html_page("Root", leaves)}
        for i, leaf in enumerate(leaves):
            pages[leaf] = html_page(f"Leaf {i}", leaves[i:i + 3])
        fetcher = FakeSiteFetcher(pages, max_delay=0.005, seed=k)
        crawler, _, config = _crawler(backend, pages, concurrency=k, fetcher=fetcher)

        result = asyncio.run(crawler.run())
        assert fetcher.max_in_flight <= k
        assert crawler.pool.peak <= k
        assert result.stats.succeeded == 31
        assert len(backend.docs(config.docs_collection)) == 31
        # every URL fetched exactly once
        assert sorted(fetcher.fetched) == sorted(pages)


class TestRecovery:

    def test_resumes_from_queued_records(self, backend):
        pages = {A: html_page("A", [B]), B: html_page("B")}
        crawler, fetcher, config = _crawler(backend, pages)
        store = StateStore(backend, config.urls_collection)

        async def simulate_crash():
            await store.ensure_collection()
            await store.upsert_many([
                UrlRecord(url=A, status=UrlStatus.CRAWLED),
                UrlRecord(url=B, status=UrlStatus.QUEUED),
                UrlRecord(url=C, status=UrlStatus.QUEUED),
            ])

        asyncio.run(simulate_crash())
        result = asyncio.run(crawler.run())

        assert fetcher.fetched == [B]
        assert result.stats.processed == 1
        assert backend.docs(config.urls_collection)[url_id(C)]["status"] == "queued"

    def test_abort_leaves_no_crawled_page_without_document(self, backend):
        leaves = [f"{HOST}/docs/leaf{i}.html" for i in range(10)]
        pages = {A: html_page("Root", leaves)}
        pages.update({leaf: html_page(leaf) for leaf in leaves})
        crawler, _, config = _crawler(backend, pages, concurrency=3, batch_size=2, index_retries=1)

        original = backend.add_or_update_documents
        doc_writes = {"n": 0}

        async def index_dies_after_two_chunks(name, documents, primary_key="id"):
            if name == config.docs_collection:
                doc_writes["n"] += 1
                if doc_writes["n"] > 2:
                    raise BackendUnavailableError("index down")
            return await original(name, documents, primary_key)

        def crawled_ids():
            return {
                uid for uid, record in backend.docs(config.urls_collection).items()
                if record["status"] == "crawled"
            }

        backend.add_or_update_documents = index_dies_after_two_chunks
        first = asyncio.run(crawler.run())
        assert first.aborted
        assert "IndexWriteError" in first.abort_reason
        assert crawled_ids() <= set(backend.docs(config.docs_collection))

        backend.add_or_update_documents = original
        again, _, _ = _crawler(backend, pages, concurrency=3, batch_size=2, index_retries=1)
        second = asyncio.run(again.run())
        assert not second.aborted
        assert crawled_ids() == {url_id(u) for u in pages}
        assert crawled_ids() <= set(backend.docs(config.docs_collection))


class TestAbort:

    def test_unreachable_state_store_aborts(self, backend):
        crawler, fetcher, _ = _crawler(backend, {A: html_page("A")})
        backend.down = True
        result = asyncio.run(crawler.run())
        assert result.aborted
        assert result.phase is CrawlPhase.FINISHED
        assert "StateStoreCommunicationError" in result.abort_reason
        assert fetcher.fetched == []

    def test_state_write_failure_mid_run_aborts(self, backend):
        leaves = [f"{HOST}/docs/leaf{i}.html" for i in range(10)]
        pages = {A: html_page("Root", leaves)}
        pages.update({leaf: html_page(leaf) for leaf in leaves})
        crawler, fetcher, config = _crawler(backend, pages, concurrency=3, batch_size=2)

        original = backend.add_or_update_documents
        writes = {"n": 0}

        # 1: seed queued, 2: leaves queued, 3: first crawled marks
        async def flaky_write(name, documents, primary_key="id"):
            if name == config.urls_collection:
                writes["n"] += 1
                if writes["n"] > 2:
                    raise BackendApiError("internal", code="internal")
            return await original(name, documents, primary_key)

        backend.add_or_update_documents = flaky_write
        result = asyncio.run(crawler.run())
        assert result.aborted
        assert "StateStoreError" in result.abort_reason
        assert crawler.pool.active == 0
        assert result.stats.processed < 11

    def test_index_write_exhaustion_aborts(self, backend):
        pages = {A: html_page("A", [B]), B: html_page("B")}
        crawler, _, config = _crawler(backend, pages, batch_size=1, index_retries=2)

        original = backend.add_or_update_documents

        async def reject_docs(name, documents, primary_key="id"):
            if name == config.docs_collection:
                raise BackendUnavailableError("index down")
            return await original(name, documents, primary_key)

        backend.add_or_update_documents = reject_docs
        result = asyncio.run(crawler.run())
        assert result.aborted
        assert "IndexWriteError" in result.abort_reason
        assert result.document_count is None


def test_site_indexer_configures_page_collection(backend):
    config = CrawlerRunConfig(base_url=A)
    indexer = build_site_indexer(config, backend)
    asyncio.run(indexer.ensure_collection(config.docs_collection))
    assert backend.filterable[config.docs_collection] == ["id", "url", "title", "content", "crawledAt"]
    assert backend.sortable[config.docs_collection] == ["crawledAt"]
    assert indexer.batch_size == config.batch_size


def test_page_document():
    page = ExtractedPage(url=A, title="T", content=None, links=[])
    doc = page_document(page, crawled_at="2024-01-01T00:00:00+00:00")
    assert doc == {
        "id": url_id(A),
        "url": A,
        "title": "T",
        "content": None,
        "crawledAt": "2024-01-01T00:00:00+00:00",
    }
