"""
Session Credentials
===================
Cookie + User-Agent headers sent with every page fetch.

Cookies are captured out-of-band (log in with a normal browser, copy the
``Cookie`` request header) and saved as::

    {"cookies": "<Cookie header value>", "timestamp": "<ISO 8601>"}

This module only *loads* them:

    1. ``CRAWLER_COOKIE`` environment variable, if set
    2. the saved cookie file, if it exists, parses, and is fresh enough
    3. otherwise anonymous credentials (a warning is logged)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

_DEFAULT_COOKIES_FILE = "data/apollo-cookies.json"
_MAX_COOKIE_AGE_DAYS = 7

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)


@dataclass(frozen=True)
class SessionCredentials:
    """Request headers that identify the crawler's session."""
    cookie_header: str = ""
    user_agent: str = DEFAULT_USER_AGENT

    @property
    def is_authenticated(self) -> bool:
        return bool(self.cookie_header)

    def headers(self) -> Dict[str, str]:
        headers = {"User-Agent": self.user_agent}
        if self.cookie_header:
            headers["Cookie"] = self.cookie_header
        return headers


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (AttributeError, ValueError):
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def load_credentials(
    cookies_file: str = _DEFAULT_COOKIES_FILE,
    *,
    max_age_days: float = _MAX_COOKIE_AGE_DAYS,
    user_agent: str = DEFAULT_USER_AGENT,
    env_var: str = "CRAWLER_COOKIE",
    now: Optional[datetime] = None,
) -> SessionCredentials:
    """Resolve session credentials (env → saved file → anonymous)."""
    env_cookie = os.environ.get(env_var, "").strip()
    if env_cookie:
        logger.info(f"[SESSION] Using cookie from ${env_var}")
        return SessionCredentials(cookie_header=env_cookie, user_agent=user_agent)

    path = Path(cookies_file)
    if not path.exists():
        logger.warning(f"[SESSION] No cookie file at {path}; crawling anonymously")
        return SessionCredentials(user_agent=user_agent)

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning(f"[SESSION] Corrupt cookie file {path}: {exc}; crawling anonymously")
        return SessionCredentials(user_agent=user_agent)

    cookies = (data.get("cookies") or "").strip() if isinstance(data, dict) else ""
    saved_at = _parse_timestamp(data.get("timestamp", "")) if isinstance(data, dict) else None
    if not cookies or saved_at is None:
        logger.warning(f"[SESSION] Cookie file {path} has no cookies/timestamp; crawling anonymously")
        return SessionCredentials(user_agent=user_agent)

    now = now or datetime.now(timezone.utc)
    age = now - saved_at
    if age > timedelta(days=max_age_days):
        logger.warning(
            f"[SESSION] Saved cookies are {age.days} days old (max {max_age_days:g}) "
            f"; crawling anonymously"
        )
        return SessionCredentials(user_agent=user_agent)

    logger.info(f"[SESSION] Using saved cookies from {path} (age {age.total_seconds() / 3600:.1f}h)")
    return SessionCredentials(cookie_header=cookies, user_agent=user_agent)
