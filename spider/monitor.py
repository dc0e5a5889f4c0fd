"""
Crawl Statistics
================
Counters for one run and the end-of-run summary.

Tracks:
- URLs processed, split into succeeded / not-found / other failures
- links newly enqueued
- documents indexed
- peak number of in-flight fetches
- elapsed wall time

Only the dispatch loop records into a ``CrawlMonitor``, so no lock is
needed.  Every ``progress_every`` processed URLs a one-line progress entry
is logged.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Optional

from .errors import FailureKind

logger = logging.getLogger(__name__)


@dataclass
class CrawlStats:
    """Snapshot of a run's counters."""
    processed: int = 0
    succeeded: int = 0
    failed_not_found: int = 0
    failed_other: int = 0
    links_enqueued: int = 0
    documents_indexed: int = 0
    peak_in_flight: int = 0
    elapsed_sec: float = 0.0
    stop_reason: str = ""

    @property
    def failed(self) -> int:
        return self.failed_not_found + self.failed_other

    @property
    def per_sec(self) -> float:
        return self.processed / self.elapsed_sec if self.elapsed_sec > 0 else 0.0

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed_not_found": self.failed_not_found,
            "failed_other": self.failed_other,
            "links_enqueued": self.links_enqueued,
            "documents_indexed": self.documents_indexed,
            "peak_in_flight": self.peak_in_flight,
            "elapsed_sec": round(self.elapsed_sec, 2),
            "stop_reason": self.stop_reason,
        }


class CrawlMonitor:
    """
    Usage::

        monitor = CrawlMonitor(label="CRAWL")
        monitor.start()
        monitor.record_success()
        monitor.record_failure(FailureKind.NOT_FOUND)
        stats = monitor.stop("completed")
        print(format_summary(stats))
    """

    def __init__(self, label: str = "CRAWL", progress_every: int = 50):
        self.label = label
        self.progress_every = progress_every
        self.stats = CrawlStats()
        self._start_time: Optional[float] = None

    def start(self) -> None:
        self._start_time = time.monotonic()

    def stop(self, reason: str = "completed") -> CrawlStats:
        self.stats.elapsed_sec = self._elapsed()
        self.stats.stop_reason = reason
        return self.stats

    def _elapsed(self) -> float:
        return time.monotonic() - self._start_time if self._start_time is not None else 0.0

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_success(self) -> None:
        self.stats.processed += 1
        self.stats.succeeded += 1
        self._maybe_report()

    def record_failure(self, kind: Optional[FailureKind]) -> None:
        """*kind* None means a failure outside the fetch taxonomy."""
        self.stats.processed += 1
        if kind is not None and kind.counts_as_not_found:
            self.stats.failed_not_found += 1
        else:
            self.stats.failed_other += 1
        self._maybe_report()

    def record_enqueued(self, count: int) -> None:
        self.stats.links_enqueued += count

    def record_indexed(self, count: int) -> None:
        self.stats.documents_indexed += count

    def record_in_flight(self, active: int) -> None:
        if active > self.stats.peak_in_flight:
            self.stats.peak_in_flight = active

    def _maybe_report(self) -> None:
        if self.progress_every <= 0 or self.stats.processed % self.progress_every:
            return
        s = self.stats
        elapsed = self._elapsed()
        speed = s.processed / elapsed if elapsed > 0 else 0.0
        logger.info(
            f"[{self.label}] "
            f"processed={s.processed} "
            f"ok={s.succeeded} "
            f"not_found={s.failed_not_found} "
            f"fail={s.failed_other} "
            f"enqueued={s.links_enqueued} "
            f"indexed={s.documents_indexed} "
            f"speed={speed:.2f}/s "
            f"elapsed={elapsed:.0f}s"
        )


def format_summary(stats: CrawlStats, title: str = "CRAWL SUMMARY") -> str:
    """Human-readable end-of-run summary."""
    lines = [
        "=" * 65,
        f"  {title}",
        "=" * 65,
        f"  Processed:           {stats.processed}",
        f"  Succeeded:           {stats.succeeded}",
        f"  Failed (not found):  {stats.failed_not_found}",
        f"  Failed (other):      {stats.failed_other}",
        "-" * 65,
        f"  Links enqueued:      {stats.links_enqueued}",
        f"  Documents indexed:   {stats.documents_indexed}",
        f"  Peak in flight:      {stats.peak_in_flight}",
        "-" * 65,
        f"  Elapsed time:        {stats.elapsed_sec:.1f} s",
        f"  Speed:               {stats.per_sec:.2f} items/sec",
        f"  Stop reason:         {stats.stop_reason}",
        "=" * 65,
    ]
    return "\n".join(lines)
