"""
Content Extractor
=================
Turns rendered HTML into a document: title, content markup, outbound links.

Content root priority (first match wins)::

    .article-content  →  main  →  body

Comments, ``<script>``, ``<style>`` and ``<noscript>`` are removed from the
content root with an iterative tree walk (explicit stack + visitor
predicate), so deeply nested markup cannot exhaust the recursion limit.

A page without a usable ``<title>`` yields ``None``; that is how a soft-404
(an error page served with HTTP 200) is detected.

The module also parses community article pages for the ID-enumerated
article crawler (``extract_article``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup
from bs4.element import Comment, PageElement, Tag

logger = logging.getLogger(__name__)

_BS_PARSER = "lxml"

DEFAULT_CONTENT_SELECTORS: Tuple[str, ...] = (".article-content", "main", "body")

_STRIP_TAGS = frozenset({"script", "style", "noscript"})
_SKIP_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:", "data:")


@dataclass
class ExtractedPage:
    """What the extractor found on one page."""
    url: str
    title: str
    content: Optional[str]
    links: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Tree cleanup
# ---------------------------------------------------------------------------

def _is_noise(node: PageElement) -> bool:
    if isinstance(node, Comment):
        return True
    return isinstance(node, Tag) and node.name in _STRIP_TAGS


def remove_nodes(root: Tag, predicate: Callable[[PageElement], bool] = _is_noise) -> int:
    """
    Remove every descendant of *root* matching *predicate*.

    Walks the tree with an explicit stack; a removed node's subtree is not
    visited.  Returns the number of nodes removed.
    """
    removed = 0
    stack: List[PageElement] = list(root.contents)
    while stack:
        node = stack.pop()
        if predicate(node):
            node.extract()
            removed += 1
            continue
        if isinstance(node, Tag):
            stack.extend(node.contents)
    return removed


def _inner_html(tag: Tag) -> str:
    return "".join(str(child) for child in tag.contents)


# ---------------------------------------------------------------------------
# Page extraction
# ---------------------------------------------------------------------------

def _clean_link(href: str, page_url: str, base_host: str) -> Optional[str]:
    href = (href or "").strip()
    if not href or href.lower().startswith(_SKIP_HREF_PREFIXES):
        return None
    try:
        resolved = urljoin(page_url, href)
        parts = urlsplit(resolved)
        host = parts.hostname
    except ValueError:
        logger.debug(f"[EXTRACT] Could not resolve link {href!r} on {page_url}")
        return None
    if parts.scheme not in ("http", "https") or host != base_host:
        return None
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


def extract_links(soup: BeautifulSoup, page_url: str) -> List[str]:
    """Same-hostname http(s) links, fragment-free, de-duplicated in document order."""
    base_host = urlsplit(page_url).hostname
    links: List[str] = []
    seen = set()
    for anchor in soup.find_all("a", href=True):
        link = _clean_link(anchor["href"], page_url, base_host)
        if link and link not in seen:
            seen.add(link)
            links.append(link)
    return links


def extract(
    raw_html: str,
    page_url: str,
    content_selectors: Sequence[str] = DEFAULT_CONTENT_SELECTORS,
) -> Optional[ExtractedPage]:
    """
    Parse one rendered page.  Returns None when there is no usable title.
    """
    soup = BeautifulSoup(raw_html or "", _BS_PARSER)

    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""
    if not title:
        logger.info(f"[EXTRACT] No title on {page_url}: treating as not found")
        return None

    links = extract_links(soup, page_url)

    content: Optional[str] = None
    for selector in content_selectors:
        root = soup.select_one(selector)
        if root is not None:
            remove_nodes(root)
            content = _inner_html(root)
            break

    return ExtractedPage(url=page_url, title=title, content=content, links=links)


# ---------------------------------------------------------------------------
# Community article pages
# ---------------------------------------------------------------------------

@dataclass
class ArticleSelectors:
    """CSS selectors for community article pages."""
    title: str = "h1"
    content: str = ".style_article__content__richtext__1R31p"
    stats: str = ".style_article__content__follow__1TzQY span"
    publish_date: str = ".style_article__content__follow__1TzQY span.style_marginright24__1REsu"
    author: str = ".style_author__name__3Rpg1"


@dataclass
class ExtractedArticle:
    title: str
    content: Optional[str]
    publish_date_str: str = ""
    publish_timestamp: Optional[int] = None
    author: str = ""
    views: int = 0
    likes: int = 0


def parse_publish_date(text: str) -> Optional[int]:
    """
    ``"YYYY-MM-DD HH:MM:SS"`` (read as UTC) or ``"YYYY-MM-DD"`` → epoch seconds.
    """
    text = (text or "").strip()
    if not text:
        return None
    candidate = text.replace(" ", "T", 1) if " " in text else text
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        logger.warning(f"[EXTRACT] Unparseable publish date: {text!r}")
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def _leading_int(text: str) -> int:
    digits = re.sub(r"\D", "", text or "")
    return int(digits) if digits else 0


def extract_article(raw_html: str, selectors: Optional[ArticleSelectors] = None) -> Optional[ExtractedArticle]:
    """Parse an article page.  Returns None for an empty ``<h1>`` (soft-404)."""
    selectors = selectors or ArticleSelectors()
    soup = BeautifulSoup(raw_html or "", _BS_PARSER)

    title_tag = soup.select_one(selectors.title)
    title = title_tag.get_text(strip=True) if title_tag else ""
    if not title:
        return None

    content_tag = soup.select_one(selectors.content)
    content = None
    if content_tag is not None:
        remove_nodes(content_tag)
        content = _inner_html(content_tag)

    date_tag = soup.select_one(selectors.publish_date)
    publish_date_str = date_tag.get_text(strip=True) if date_tag else ""

    author_tag = soup.select_one(selectors.author)
    author = author_tag.get_text(strip=True) if author_tag else ""

    # stats row: [date, views, likes(nested count in last span)]
    stats = soup.select(selectors.stats)
    views = _leading_int(stats[1].get_text(strip=True)) if len(stats) > 1 else 0
    likes = 0
    if len(stats) > 2:
        nested = stats[2].find_all("span")
        likes_text = nested[-1].get_text(strip=True) if nested else stats[2].get_text(strip=True)
        likes = _leading_int(likes_text)

    return ExtractedArticle(
        title=title,
        content=content,
        publish_date_str=publish_date_str,
        publish_timestamp=parse_publish_date(publish_date_str),
        author=author,
        views=views,
        likes=likes,
    )
