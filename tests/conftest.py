"""
Shared fixtures: an in-memory ``SearchBackend`` and fake Playwright pages.

Nothing here talks to a network, a browser or a Meilisearch server.
"""

import asyncio
import itertools
import random
from typing import Any, Dict, List, Optional, Sequence

import pytest

from spider.errors import BackendApiError, BackendUnavailableError, FailureKind, FetchFailure
from spider.fetcher import RawPage
from spider.search_backend import SearchBackend, SearchPage, TaskOutcome

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeout


# ====================================================================
# Search backend
# ====================================================================

class InMemoryBackend(SearchBackend):
    """
    Dict-backed ``SearchBackend``.

    Failure injection:
      - ``fail_next(method, exc, times=1)`` raises *exc* from the next
        *times* calls of *method*
      - ``fail_tasks(n)`` makes the next *n* write tasks end as ``failed``
        without applying their documents
      - ``down = True`` makes every call raise ``BackendUnavailableError``
    """

    def __init__(self):
        self.collections: Dict[str, Dict[Any, Dict[str, Any]]] = {}
        self.primary_keys: Dict[str, str] = {}
        self.filterable: Dict[str, List[str]] = {}
        self.sortable: Dict[str, List[str]] = {}
        self.tasks: Dict[int, TaskOutcome] = {}
        self.calls: List[str] = []
        self.down = False
        self._errors: Dict[str, List[Exception]] = {}
        self._failing_tasks = 0
        self._task_ids = itertools.count(1)

    # -- injection -----------------------------------------------------

    def fail_next(self, method: str, exc: Exception, times: int = 1) -> None:
        self._errors.setdefault(method, []).extend([exc] * times)

    def fail_tasks(self, count: int) -> None:
        self._failing_tasks += count

    def _enter(self, method: str) -> None:
        self.calls.append(method)
        if self.down:
            raise BackendUnavailableError("connection refused")
        pending = self._errors.get(method)
        if pending:
            raise pending.pop(0)

    def docs(self, name: str) -> Dict[Any, Dict[str, Any]]:
        return self.collections.get(name, {})

    # -- collections ---------------------------------------------------

    async def create_collection_if_absent(self, name, primary_key="id"):
        self._enter("create_collection_if_absent")
        if name in self.collections:
            return False
        self.collections[name] = {}
        self.primary_keys[name] = primary_key
        return True

    async def configure_filterable_fields(self, name, fields):
        self._enter("configure_filterable_fields")
        self.filterable[name] = list(fields)

    async def configure_sortable_fields(self, name, fields):
        self._enter("configure_sortable_fields")
        self.sortable[name] = list(fields)

    # -- writes --------------------------------------------------------

    async def add_or_update_documents(self, name, documents, primary_key="id"):
        self._enter("add_or_update_documents")
        uid = next(self._task_ids)
        if self._failing_tasks:
            self._failing_tasks -= 1
            self.tasks[uid] = TaskOutcome(uid, False, "failed", "injected task failure")
            return uid
        collection = self.collections.setdefault(name, {})
        for doc in documents:
            collection[doc[primary_key]] = dict(doc)
        self.tasks[uid] = TaskOutcome(uid, True, "succeeded")
        return uid

    async def wait_for_task(self, task_uid, timeout_ms):
        self._enter("wait_for_task")
        return self.tasks[task_uid]

    # -- reads ---------------------------------------------------------

    async def get_document(self, name, doc_id):
        self._enter("get_document")
        if name not in self.collections:
            raise BackendApiError(f"Index `{name}` not found.", code="index_not_found", status=404)
        doc = self.collections[name].get(doc_id)
        return dict(doc) if doc is not None else None

    async def get_documents(self, name, ids):
        self._enter("get_documents")
        collection = self.collections.get(name, {})
        return [dict(collection[i]) for i in ids if i in collection]

    async def filter_documents(self, name, field_name, value, *, offset=0, limit=1000):
        self._enter("filter_documents")
        matches = [d for d in self.collections.get(name, {}).values() if d.get(field_name) == value]
        return [dict(d) for d in matches[offset:offset + limit]]

    async def list_documents(self, name, *, offset=0, limit=1000, fields=None):
        self._enter("list_documents")
        docs = list(self.collections.get(name, {}).values())[offset:offset + limit]
        if fields:
            return [{k: d[k] for k in fields if k in d} for d in docs]
        return [dict(d) for d in docs]

    async def search(self, name, query="", *, offset=0, limit=20, sort=None, filter=None):
        self._enter("search")
        docs = list(self.collections.get(name, {}).values())
        for rule in reversed(list(sort or [])):
            field_name, _, direction = rule.partition(":")
            docs.sort(key=lambda d: d.get(field_name), reverse=direction == "desc")
        return SearchPage(hits=[dict(d) for d in docs[offset:offset + limit]], estimated_total_hits=len(docs))

    async def document_count(self, name):
        self._enter("document_count")
        return len(self.collections.get(name, {}))


@pytest.fixture
def backend():
    return InMemoryBackend()


# ====================================================================
# Playwright fakes
# ====================================================================

class FakeResponse:
    def __init__(self, status: int):
        self.status = status


class FakePage:
    """
    Minimal ``playwright.async_api.Page``.  ``site`` maps a URL to
    ``(status, html)``, to an exception instance to raise from ``goto``, or
    to a list of either, consumed one per navigation.
    """

    def __init__(self, source: "FakePageSource"):
        self.source = source
        self.headers: Dict[str, str] = {}
        self.closed = False
        self._html = ""

    async def set_extra_http_headers(self, headers):
        self.headers = dict(headers)

    async def goto(self, url, wait_until=None, timeout=None):
        self.source.navigations.append(url)
        entry = self.source.site.get(url, (404, "<html><head><title>Not Found</title></head></html>"))
        if isinstance(entry, list):
            entry = entry.pop(0) if len(entry) > 1 else entry[0]
        if isinstance(entry, BaseException):
            raise entry
        status, html = entry
        self._html = html
        return FakeResponse(status)

    async def content(self):
        return self._html

    async def close(self):
        self.closed = True
        self.source.open_count -= 1


class FakePageSource:
    def __init__(self, site: Optional[Dict[str, Any]] = None):
        self.site = dict(site or {})
        self.pages: List[FakePage] = []
        self.navigations: List[str] = []
        self.open_count = 0

    async def new_page(self):
        page = FakePage(self)
        self.pages.append(page)
        self.open_count += 1
        return page


def navigation_timeout(message="Timeout 60000ms exceeded."):
    return PlaywrightTimeout(message)


def navigation_error(message="net::ERR_NAME_NOT_RESOLVED"):
    return PlaywrightError(message)


# ====================================================================
# Site fixture
# ====================================================================

def html_page(title: str, links: Sequence[str] = (), body: str = "") -> str:
    anchors = "".join(f'<a href="{href}">{href}</a>' for href in links)
    head = f"<title>{title}</title>" if title else ""
    return (
        f"<html><head>{head}</head><body>"
        f'<div class="article-content"><p>{body or title}</p>{anchors}</div>'
        f"</body></html>"
    )


class FakeSiteFetcher:
    """
    Stands in for ``PageFetcher`` in orchestrator tests.  Answers from a
    ``{url: html}`` map after a random short delay and records how many
    fetches were in flight at once.
    """

    def __init__(self, pages: Dict[str, str], *, max_delay: float = 0.01, seed: int = 7):
        self.pages = pages
        self.max_delay = max_delay
        self.fetched: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._random = random.Random(seed)

    async def fetch(self, url, credentials=None):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self._random.uniform(0, self.max_delay))
            self.fetched.append(url)
            if url not in self.pages:
                return FetchFailure(url, FailureKind.NOT_FOUND, "HTTP 404 Not Found", 404)
            return RawPage(url=url, html=self.pages[url])
        finally:
            self.in_flight -= 1


async def no_sleep(_delay):
    return None
