#!/usr/bin/env python3
"""
Command-line entry point
========================
Three jobs, one per sub-command:

    python -m spider crawl              # site crawl into apollo_docs
    python -m spider articles           # discover new community articles
    python -m spider refresh-articles   # re-fetch every indexed article

All configuration flows through ``CrawlerRunConfig``: defaults, then the
environment (a ``.env`` file is loaded first), then the flags given here.
The process exits with status 1 when a run is aborted.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from .monitor import format_summary
from .run_config import CrawlerRunConfig

logger = logging.getLogger(__name__)


def _load_env() -> None:
    env_path = Path(__file__).resolve().parent.parent / '.env'
    if env_path.exists():
        load_dotenv(env_path)
    else:
        load_dotenv()  # tries CWD


def print_summary(title: str, stats, aborted: bool, abort_reason: str = "", extra: dict = None) -> None:
    """Print the end-of-run summary."""
    print()
    print(format_summary(stats, title=title))
    for label, value in (extra or {}).items():
        print(f"  {label:<21}{value}")
    if aborted:
        print(f"  ABORTED:             {abort_reason}")
        print("=" * 65)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='spider',
        description='Documentation-site crawler and Meilisearch indexer',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m spider crawl
  python -m spider crawl --concurrency 3 --blacklist /workspace /community
  python -m spider articles --start-id 1200 --max-id 4000
  python -m spider refresh-articles
        """,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--meili-host', type=str, help='Meilisearch URL (default: $MEILI_HOST)')
    parser.add_argument('--batch-size', type=int, help='Documents per index write (default: 1000)')
    parser.add_argument('--retries', type=int, help='Attempts per index write (default: 3)')
    parser.add_argument('--cookies-file', type=str, help='Saved session cookies (JSON)')
    parser.add_argument('--no-delay', action='store_true', help='Disable the polite delay between requests')

    sub = parser.add_subparsers(dest='command', required=True)

    crawl = sub.add_parser('crawl', help='Crawl the documentation site')
    crawl.add_argument('url', nargs='?', help='Seed URL (default: $CRAWLER_BASE_URL or the Apollo docs)')
    crawl.add_argument('--concurrency', type=int, help='Max pages fetched at once (default: 5)')
    crawl.add_argument('--timeout', type=int, help='Navigation timeout in seconds (default: 60)')
    crawl.add_argument('--blacklist', nargs='+', metavar='PREFIX', help='Path prefixes never crawled')
    crawl.add_argument('--headful', action='store_true', help='Show the browser window')

    articles = sub.add_parser('articles', help='Discover new community articles by ID')
    articles.add_argument('--start-id', type=int, help='First ID when the index is empty (default: 1000)')
    articles.add_argument('--max-id', type=int, help='Highest ID to try (default: 3000)')
    articles.add_argument('--article-concurrency', type=int, help='Articles fetched at once (default: 20)')

    refresh = sub.add_parser('refresh-articles', help='Re-fetch every indexed article')
    refresh.add_argument('--article-concurrency', type=int, help='Articles fetched at once (default: 20)')

    return parser


def main(argv=None) -> int:
    _load_env()
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%H:%M:%S'
    )

    try:
        config = CrawlerRunConfig.from_cli_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    config.log_summary(args.command)

    if args.command == 'crawl':
        from .orchestrator import run_site_crawl
        result = asyncio.run(run_site_crawl(config))
        extra = {}
        if result.document_count is not None:
            extra["Docs in index:"] = result.document_count
        print_summary("CRAWL COMPLETE", result.stats, result.aborted, result.abort_reason, extra)
        return 1 if result.aborted else 0

    from .articles import run_article_discovery, run_article_refresh
    if args.command == 'articles':
        result = asyncio.run(run_article_discovery(config))
        title = "ARTICLE DISCOVERY COMPLETE"
    else:
        result = asyncio.run(run_article_refresh(config))
        title = "ARTICLE REFRESH COMPLETE"
    print_summary(title, result.stats, result.aborted, result.abort_reason)
    return 1 if result.aborted else 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n\nInterrupted.")
        sys.exit(130)
