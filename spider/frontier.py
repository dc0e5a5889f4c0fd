"""
URL Frontier
============
In-memory set of URLs awaiting a fetch attempt in this process.

The frontier is never trusted to survive a crash on its own: every URL in it
has a persisted ``queued`` record, and ``restore()`` rebuilds it from the
state store at startup.  It is owned by the Orchestrator, which is its only
writer.

Entries are keyed by ``url_id(url)``, the same key the state store uses, so
two spellings of one URL (``HTTPS://Apollo.Baidu.com/x`` and
``https://apollo.baidu.com/x``) are one entry.  The first spelling seen is
the one fetched.

A URL is added at most once per process.  ``take()`` removes the URL at
dispatch time, before its fetch completes, and its id stays in the
process-local ``_seen`` set so the same link discovered on another page in
the same pass is not queued again.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Set

from .blacklist import BlacklistFilter
from .state_store import StateStore, UrlRecord, UrlStatus, utc_now_iso
from .utils import url_id

logger = logging.getLogger(__name__)


class Frontier:
    """Pending-URL work set backed by a ``StateStore``."""

    def __init__(self, store: StateStore, blacklist: BlacklistFilter):
        self.store = store
        self.blacklist = blacklist
        # id -> url; dict keeps insertion order -> take() is FIFO
        self._pending: Dict[str, str] = {}
        self._seen: Set[str] = set()

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, url: str) -> bool:
        return url_id(url) in self._pending

    def __bool__(self) -> bool:
        return bool(self._pending)

    @property
    def pending(self) -> List[str]:
        return list(self._pending.values())

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def restore(self) -> Set[str]:
        """
        Reload every ``queued`` record, minus URLs blacklisted under the
        current configuration.  The survivors seed the in-memory set.
        """
        records = await self.store.query_by_status(UrlStatus.QUEUED)
        restored: Set[str] = set()
        dropped = 0
        for record in records:
            if self.blacklist.is_blacklisted(record.url):
                dropped += 1
                continue
            self._add(record.url)
            restored.add(record.url)

        logger.info(
            f"[FRONTIER] Restored {len(restored)} queued URLs from state store"
            + (f" ({dropped} now blacklisted, skipped)" if dropped else "")
        )
        return restored

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue_if_new(self, url: str) -> bool:
        """
        Queue *url* if it is allowed and has never been recorded.

        Returns True if a ``queued`` record was written and the URL added.
        """
        if self.blacklist.is_blacklisted(url):
            logger.debug(f"[FRONTIER] Blacklisted, skipped: {url}")
            return False
        uid = url_id(url)
        if uid in self._seen:
            return False
        if await self.store.exists(url):
            self._seen.add(uid)
            return False

        await self.store.upsert(UrlRecord(url=url, status=UrlStatus.QUEUED, crawled_at=utc_now_iso()))
        self._add(url)
        return True

    async def enqueue_batch(self, urls: Iterable[str]) -> List[str]:
        """
        ``enqueue_if_new`` for a page's worth of links, with one batched
        existence query and one batched write.  Returns the URLs added.
        """
        by_id: Dict[str, str] = {}
        for u in urls:
            uid = url_id(u)
            if uid in by_id or uid in self._seen or self.blacklist.is_blacklisted(u):
                continue
            by_id[uid] = u
        if not by_id:
            return []

        candidates = list(by_id.values())
        recorded = await self.store.exists_batch(candidates)
        self._seen.update(url_id(u) for u in recorded)
        new_urls = [u for u in candidates if u not in recorded]
        if not new_urls:
            return []

        now = utc_now_iso()
        await self.store.upsert_many(
            UrlRecord(url=u, status=UrlStatus.QUEUED, crawled_at=now) for u in new_urls
        )
        for url in new_urls:
            self._add(url)
        logger.info(f"[FRONTIER] Queued {len(new_urls)} new links (frontier: {len(self._pending)})")
        return new_urls

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def take(self) -> Optional[str]:
        """Remove and return the oldest pending URL, or None if empty."""
        if not self._pending:
            return None
        uid = next(iter(self._pending))
        return self._pending.pop(uid)

    def _add(self, url: str) -> None:
        uid = url_id(url)
        self._seen.add(uid)
        self._pending.setdefault(uid, url)
