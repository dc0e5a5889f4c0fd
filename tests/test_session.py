"""
Tests for session.py: credential resolution order and cookie file checks.
"""

import json
import logging
from datetime import datetime, timedelta, timezone

import pytest

from spider.session import DEFAULT_USER_AGENT, SessionCredentials, load_credentials

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def no_env_cookie(monkeypatch):
    monkeypatch.delenv("CRAWLER_COOKIE", raising=False)


def _write(path, cookies="sid=abc", timestamp=None):
    path.write_text(json.dumps({
        "cookies": cookies,
        "timestamp": timestamp or (NOW - timedelta(days=1)).isoformat(),
    }), encoding="utf-8")
    return str(path)


class TestLoadCredentials:

    def test_env_var_wins(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CRAWLER_COOKIE", "sid=env")
        path = _write(tmp_path / "cookies.json")
        creds = load_credentials(path, now=NOW)
        assert creds.cookie_header == "sid=env"

    def test_fresh_file(self, tmp_path):
        creds = load_credentials(_write(tmp_path / "cookies.json"), now=NOW)
        assert creds.cookie_header == "sid=abc"
        assert creds.is_authenticated

    def test_stale_file_is_anonymous(self, tmp_path):
        path = _write(tmp_path / "cookies.json", timestamp=(NOW - timedelta(days=8)).isoformat())
        creds = load_credentials(path, max_age_days=7, now=NOW)
        assert not creds.is_authenticated

    def test_zulu_and_naive_timestamps(self, tmp_path):
        zulu = _write(tmp_path / "z.json", timestamp="2024-05-31T12:00:00Z")
        naive = _write(tmp_path / "n.json", timestamp="2024-05-31T12:00:00")
        assert load_credentials(zulu, now=NOW).is_authenticated
        assert load_credentials(naive, now=NOW).is_authenticated

    def test_missing_file(self, tmp_path):
        creds = load_credentials(str(tmp_path / "nope.json"), now=NOW)
        assert creds == SessionCredentials()

    def test_missing_file_warning_text(self, tmp_path, caplog):
        path = str(tmp_path / "nope.json")
        with caplog.at_level(logging.WARNING, logger="spider.session"):
            load_credentials(path, now=NOW)
        assert [r.getMessage() for r in caplog.records] == [
            f"[SESSION] No cookie file at {path}; crawling anonymously"
        ]

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / "cookies.json"
        path.write_text("{not json", encoding="utf-8")
        assert not load_credentials(str(path), now=NOW).is_authenticated

    @pytest.mark.parametrize("payload", [[], {"cookies": ""}, {"cookies": "sid=1"}, {"cookies": "sid=1", "timestamp": "soon"}])
    def test_incomplete_file(self, tmp_path, payload):
        path = tmp_path / "cookies.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        assert not load_credentials(str(path), now=NOW).is_authenticated

    def test_user_agent_passed_through(self, tmp_path):
        creds = load_credentials(str(tmp_path / "nope.json"), user_agent="spider-test")
        assert creds.user_agent == "spider-test"


class TestHeaders:

    def test_anonymous_headers(self):
        assert SessionCredentials().headers() == {"User-Agent": DEFAULT_USER_AGENT}

    def test_cookie_header(self):
        headers = SessionCredentials(cookie_header="a=1; b=2", user_agent="UA").headers()
        assert headers == {"User-Agent": "UA", "Cookie": "a=1; b=2"}
