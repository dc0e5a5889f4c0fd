"""
Spider Package
A documentation-site crawler that feeds a Meilisearch index.

CLI Usage:
    python -m spider crawl [url] [options]
    python -m spider articles [options]
    python -m spider refresh-articles [options]

    Options:
        --concurrency     Max pages fetched at once (default: 5)
        --blacklist       Path prefixes never crawled
        --batch-size      Documents per index write (default: 1000)
        --retries         Attempts per index write (default: 3)
        --cookies-file    Saved session cookies (JSON)
"""

from .articles import ArticleCrawler, ArticleFetcher, ArticleRunResult
from .blacklist import BlacklistFilter
from .errors import (
    CrawlerError,
    FailureKind,
    FetchFailure,
    IndexWriteError,
    StateStoreCommunicationError,
    StateStoreError,
)
from .extractor import ExtractedPage, extract
from .fetcher import BrowserSession, PageFetcher, RawPage
from .frontier import Frontier
from .indexing import CollectionSettings, DocumentBuffer, IndexingPipeline
from .monitor import CrawlMonitor, CrawlStats
from .orchestrator import CrawlPhase, CrawlResult, SiteCrawler, run_site_crawl
from .pool import WorkerPool
from .run_config import CrawlerRunConfig
from .search_backend import MeiliSearchBackend, SearchBackend
from .session import SessionCredentials, load_credentials
from .state_store import StateStore, UrlRecord, UrlStatus
from .utils import RetryHandler, normalize_url, url_id

__version__ = "1.0.0"

__all__ = [
    'ArticleCrawler',
    'ArticleFetcher',
    'ArticleRunResult',
    'BlacklistFilter',
    'BrowserSession',
    'CollectionSettings',
    'CrawlMonitor',
    'CrawlPhase',
    'CrawlResult',
    'CrawlStats',
    'CrawlerError',
    'CrawlerRunConfig',
    'DocumentBuffer',
    'ExtractedPage',
    'FailureKind',
    'FetchFailure',
    'Frontier',
    'IndexWriteError',
    'IndexingPipeline',
    'MeiliSearchBackend',
    'PageFetcher',
    'RawPage',
    'RetryHandler',
    'SearchBackend',
    'SessionCredentials',
    'SiteCrawler',
    'StateStore',
    'StateStoreCommunicationError',
    'StateStoreError',
    'UrlRecord',
    'UrlStatus',
    'WorkerPool',
    'extract',
    'load_credentials',
    'normalize_url',
    'run_site_crawl',
    'url_id',
]
