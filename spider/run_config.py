"""
Unified Run Configuration
=========================
Single source of truth for every crawler default and runtime limit.

Precedence, lowest first::

    _DEFAULTS  →  environment (``.env`` loaded by the CLI)  →  CLI flags

The site crawl, the article crawler and the CLI all read from one
``CrawlerRunConfig``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields, replace
from typing import Dict, List, Mapping, Optional

from .session import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Canonical defaults: the ONLY place these numbers live
# ---------------------------------------------------------------------------
_DEFAULTS = {
    "meili_host": "http://localhost:7700",
    "base_url": "https://apollo.baidu.com/docs/apollo/latest/index.html",
    "blacklisted_paths": ["/workspace", "/community/article", "/community/person"],
    "concurrency": 5,                 # K: max in-flight page fetches
    "nav_timeout_ms": 60_000,
    "fetch_retries": 3,               # attempts for HTTP 5xx
    "min_delay_s": 1.0,               # polite delay before each fetch
    "max_delay_s": 3.0,
    "batch_size": 1000,               # documents per index write
    "index_retries": 3,
    "retry_base_delay_s": 1.0,        # backoff: base * 2^(attempt-1)
    "task_timeout_ms": 60_000,
    "urls_collection": "apollo_crawled_urls",
    "docs_collection": "apollo_docs",
    "articles_collection": "apollo_articles",
    "content_selectors": [".article-content", "main", "body"],
    "cookies_file": "data/apollo-cookies.json",
    "cookie_max_age_days": 7,
    "headless": True,
    "progress_every": 50,
    # Article crawler
    "article_url_template": "https://apollo.baidu.com/community/article/{id}",
    "article_start_id": 1000,
    "article_max_id": 3000,
    "article_concurrency": 20,
    "article_batch_size": 20,
    "consecutive_failure_limit": 50,
    "article_request_timeout_s": 30,
    "refresh_page_size": 1000,
    "refresh_batch_size": 100,
    "refresh_max_documents": 100_000,
}

# env var -> field name
_ENV_VARS = {
    "MEILI_HOST": "meili_host",
    "MEILI_API_KEY": "meili_api_key",
    "CRAWLER_BASE_URL": "base_url",
    "CRAWLER_BLACKLIST": "blacklisted_paths",
    "CRAWLER_CONCURRENCY": "concurrency",
    "CRAWLER_BATCH_SIZE": "batch_size",
    "CRAWLER_INDEX_RETRIES": "index_retries",
    "CRAWLER_COOKIES_FILE": "cookies_file",
    "CRAWLER_HEADLESS": "headless",
}

_TRUE_VALUES = ("1", "true", "yes", "on")


def _split_list(value: str) -> List[str]:
    return [p.strip() for p in value.split(",") if p.strip()]


@dataclass
class CrawlerRunConfig:
    """
    Configuration consumed by every crawler subsystem.

    Populate via:
      - ``CrawlerRunConfig()``                 → all defaults
      - ``CrawlerRunConfig(concurrency=2)``    → override one value
      - ``CrawlerRunConfig.from_env()``        → defaults + environment
      - ``CrawlerRunConfig.from_cli_args(ns)`` → environment + argparse flags
    """

    # ---- Search engine ----
    meili_host: str = _DEFAULTS["meili_host"]
    meili_api_key: Optional[str] = None

    # ---- Site ----
    base_url: str = _DEFAULTS["base_url"]
    blacklisted_paths: List[str] = field(default_factory=lambda: list(_DEFAULTS["blacklisted_paths"]))
    content_selectors: List[str] = field(default_factory=lambda: list(_DEFAULTS["content_selectors"]))

    # ---- Fetching ----
    concurrency: int = _DEFAULTS["concurrency"]
    nav_timeout_ms: int = _DEFAULTS["nav_timeout_ms"]
    fetch_retries: int = _DEFAULTS["fetch_retries"]
    min_delay_s: float = _DEFAULTS["min_delay_s"]
    max_delay_s: float = _DEFAULTS["max_delay_s"]
    headless: bool = _DEFAULTS["headless"]
    user_agent: str = DEFAULT_USER_AGENT

    # ---- Indexing ----
    batch_size: int = _DEFAULTS["batch_size"]
    index_retries: int = _DEFAULTS["index_retries"]
    retry_base_delay_s: float = _DEFAULTS["retry_base_delay_s"]
    task_timeout_ms: int = _DEFAULTS["task_timeout_ms"]

    # ---- Collections ----
    urls_collection: str = _DEFAULTS["urls_collection"]
    docs_collection: str = _DEFAULTS["docs_collection"]
    articles_collection: str = _DEFAULTS["articles_collection"]

    # ---- Session ----
    cookies_file: str = _DEFAULTS["cookies_file"]
    cookie_max_age_days: float = _DEFAULTS["cookie_max_age_days"]

    # ---- Reporting ----
    progress_every: int = _DEFAULTS["progress_every"]

    # ---- Article crawler ----
    article_url_template: str = _DEFAULTS["article_url_template"]
    article_start_id: int = _DEFAULTS["article_start_id"]
    article_max_id: int = _DEFAULTS["article_max_id"]
    article_concurrency: int = _DEFAULTS["article_concurrency"]
    article_batch_size: int = _DEFAULTS["article_batch_size"]
    consecutive_failure_limit: int = _DEFAULTS["consecutive_failure_limit"]
    article_request_timeout_s: int = _DEFAULTS["article_request_timeout_s"]
    refresh_page_size: int = _DEFAULTS["refresh_page_size"]
    refresh_batch_size: int = _DEFAULTS["refresh_batch_size"]
    refresh_max_documents: int = _DEFAULTS["refresh_max_documents"]

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.article_concurrency < 1:
            raise ValueError(f"article_concurrency must be >= 1, got {self.article_concurrency}")
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")
        if self.max_delay_s < self.min_delay_s:
            self.max_delay_s = self.min_delay_s

    # -----------------------------------------------------------------------
    # Factory helpers
    # -----------------------------------------------------------------------
    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CrawlerRunConfig":
        """Defaults overridden by the ``MEILI_*`` / ``CRAWLER_*`` variables that are set."""
        environ = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(cls)}
        overrides: Dict[str, object] = {}
        for var, name in _ENV_VARS.items():
            raw = environ.get(var)
            if raw is None or raw.strip() == "":
                continue
            raw = raw.strip()
            kind = types[name]
            try:
                if name == "blacklisted_paths":
                    overrides[name] = _split_list(raw)
                elif kind == "bool":
                    overrides[name] = raw.lower() in _TRUE_VALUES
                elif kind == "int":
                    overrides[name] = int(raw)
                else:
                    overrides[name] = raw
            except ValueError as exc:
                raise ValueError(f"Invalid value for ${var}: {raw!r}") from exc
        return cls(**overrides)

    @classmethod
    def from_cli_args(cls, args, environ: Optional[Mapping[str, str]] = None) -> "CrawlerRunConfig":
        """Build config from an argparse Namespace (``__main__.py``) on top of the environment."""
        cfg = cls.from_env(environ)
        overrides = {
            "base_url": getattr(args, "url", None),
            "concurrency": getattr(args, "concurrency", None),
            "batch_size": getattr(args, "batch_size", None),
            "index_retries": getattr(args, "retries", None),
            "nav_timeout_ms": (
                getattr(args, "timeout", None) * 1000
                if getattr(args, "timeout", None) is not None else None
            ),
            "cookies_file": getattr(args, "cookies_file", None),
            "meili_host": getattr(args, "meili_host", None),
            "article_start_id": getattr(args, "start_id", None),
            "article_max_id": getattr(args, "max_id", None),
            "article_concurrency": getattr(args, "article_concurrency", None),
        }
        blacklist = getattr(args, "blacklist", None)
        if blacklist:
            overrides["blacklisted_paths"] = list(blacklist)
        if getattr(args, "headful", False):
            overrides["headless"] = False
        if getattr(args, "no_delay", False):
            overrides["min_delay_s"] = 0.0
            overrides["max_delay_s"] = 0.0
        return replace(cfg, **{k: v for k, v in overrides.items() if v is not None})

    # -----------------------------------------------------------------------
    # Logging helper
    # -----------------------------------------------------------------------
    def log_summary(self, command: str = "crawl") -> None:
        """Emit a structured summary to the logger."""
        logger.info("=" * 60)
        logger.info(f"RUN CONFIG ({command})")
        logger.info("=" * 60)
        logger.info(f"  Meilisearch:      {self.meili_host} (key {'set' if self.meili_api_key else 'not set'})")
        if command == "crawl":
            logger.info(f"  Seed URL:         {self.base_url}")
            logger.info(f"  Blacklist:        {', '.join(self.blacklisted_paths) or '(none)'}")
            logger.info(f"  Concurrency:      {self.concurrency}")
            logger.info(f"  Nav Timeout:      {self.nav_timeout_ms / 1000:.0f}s")
            logger.info(f"  Delay:            {self.min_delay_s}-{self.max_delay_s}s per fetch")
            logger.info(f"  Headless:         {self.headless}")
            logger.info(f"  Collections:      {self.urls_collection}, {self.docs_collection}")
        else:
            logger.info(f"  Collection:       {self.articles_collection}")
            logger.info(f"  Article IDs:      {self.article_start_id}..{self.article_max_id}")
            logger.info(f"  Concurrency:      {self.article_concurrency}")
            logger.info(f"  Failure Limit:    {self.consecutive_failure_limit} consecutive")
        logger.info(f"  Batch Size:       {self.batch_size}")
        logger.info(f"  Index Retries:    {self.index_retries}")
        logger.info(f"  Cookies File:     {self.cookies_file}")
        logger.info("=" * 60)
