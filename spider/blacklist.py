"""
Blacklist Filter
================
Path-prefix exclusion rules for a single crawled site.

Two checks live here, applied in this order by the pipeline:

- ``is_link_candidate(url)``: only same-hostname ``http``/``https`` URLs
  are considered link candidates at all.
- ``is_blacklisted(url)``: same-hostname URLs whose path starts with a
  configured prefix are rejected.  URLs on other hosts are never rejected by
  this predicate.  A URL that fails to parse is treated as blacklisted
  (fail-closed) so malformed input never reaches the state store.

Both are pure: no I/O, no state beyond the configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_ALLOWED_SCHEMES = ("http", "https")


def _hostname(url: str) -> Optional[str]:
    """Lower-cased hostname of *url*, or None if it does not parse."""
    try:
        parts = urlsplit(url.strip())
        # .port raises ValueError on garbage like "host:abc"
        parts.port
    except (ValueError, AttributeError):
        return None
    return parts.hostname


@dataclass
class BlacklistFilter:
    """
    Blacklist for one site.

    Parameters
    ----------
    base_url : str
        Seed URL; its hostname is the "same host" every check refers to.
    blacklisted_paths : list[str]
        Path prefixes to exclude, e.g. ``["/workspace", "/community/article"]``.
        Matching is a plain ``startswith`` on the URL path, exactly as
        configured (``/workspace`` also excludes ``/workspaces``).
    """

    base_url: str = ""
    blacklisted_paths: List[str] = field(default_factory=list)

    _base_host: Optional[str] = field(init=False, repr=False, default=None)
    _prefixes: tuple = field(init=False, repr=False, default=())

    def __post_init__(self):
        self._base_host = _hostname(self.base_url) if self.base_url else None
        if self.base_url and self._base_host is None:
            logger.warning(f"[BLACKLIST] Could not parse base URL: {self.base_url}")
        self._prefixes = tuple(p for p in self.blacklisted_paths if p)

    @property
    def base_host(self) -> Optional[str]:
        return self._base_host

    def is_blacklisted(self, url: str) -> bool:
        """True if *url* must never be crawled (or could not be parsed)."""
        if not url:
            return True
        try:
            parts = urlsplit(url.strip())
            host = parts.hostname
            parts.port
        except (ValueError, AttributeError) as exc:
            logger.warning(f"[BLACKLIST] Unparseable URL treated as blacklisted: {url!r} ({exc})")
            return True

        if not parts.scheme or not host:
            logger.warning(f"[BLACKLIST] Unparseable URL treated as blacklisted: {url!r}")
            return True

        if host != self._base_host:
            return False

        path = parts.path or "/"
        return any(path.startswith(prefix) for prefix in self._prefixes)

    def is_link_candidate(self, url: str) -> bool:
        """True for same-hostname http/https URLs."""
        if not url or self._base_host is None:
            return False
        try:
            parts = urlsplit(url.strip())
        except ValueError:
            return False
        if parts.scheme.lower() not in _ALLOWED_SCHEMES:
            return False
        return _hostname(url) == self._base_host

    def filter_candidates(self, urls: Iterable[str]) -> List[str]:
        """Keep link candidates that are not blacklisted, preserving order and dropping repeats."""
        kept: List[str] = []
        seen = set()
        for url in urls:
            if url in seen:
                continue
            seen.add(url)
            if self.is_link_candidate(url) and not self.is_blacklisted(url):
                kept.append(url)
        return kept

    def log_rules(self) -> None:
        """Emit the active rules to the logger."""
        logger.info(f"[BLACKLIST] Host: {self._base_host or '(unknown)'}")
        if self._prefixes:
            logger.info(f"[BLACKLIST] Excluded prefixes: {', '.join(self._prefixes)}")
        else:
            logger.info("[BLACKLIST] No excluded prefixes")
