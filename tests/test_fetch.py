"""Tests for paginated fetching with retries."""

import logging

import pytest

from agent_monitor.errors import FetchError, RateLimitError
from agent_monitor.fetch import fetch_all_pages


class TestFetchAllPages:
    def test_stops_on_empty_page(self):
        pages = {1: ["a", "b"], 2: ["c"]}
        calls = []

        def fetch(page):
            calls.append(page)
            return pages.get(page, [])

        assert fetch_all_pages(fetch) == ["a", "b", "c"]
        assert calls == [1, 2, 3]

    def test_ceiling_of_one_hundred_calls(self, caplog):
        calls = []

        def fetch(page):
            calls.append(page)
            return [page]

        with caplog.at_level(logging.WARNING):
            items = fetch_all_pages(fetch)
        assert len(calls) == 100
        assert len(items) == 100
        assert "Stopped paging after 100 pages" in caplog.text

    def test_transient_error_retried(self):
        attempts = {"n": 0}

        def fetch(page):
            if page == 1:
                attempts["n"] += 1
                if attempts["n"] < 3:
                    raise FetchError("503", status=503, transient=True)
                return ["ok"]
            return []

        assert fetch_all_pages(fetch, retry_attempts=3) == ["ok"]
        assert attempts["n"] == 3

    def test_transient_error_exhausts_retries(self):
        calls = []

        def fetch(page):
            calls.append(page)
            raise FetchError("timeout", transient=True)

        with pytest.raises(FetchError):
            fetch_all_pages(fetch, retry_attempts=2)
        assert len(calls) == 2

    def test_client_error_not_retried(self):
        calls = []

        def fetch(page):
            calls.append(page)
            raise FetchError("404", status=404)

        with pytest.raises(FetchError) as exc_info:
            fetch_all_pages(fetch, retry_attempts=3)
        assert exc_info.value.status == 404
        assert calls == [1]

    def test_rate_limit_not_retried(self):
        calls = []

        def fetch(page):
            calls.append(page)
            raise RateLimitError("limited", status=403)

        with pytest.raises(RateLimitError):
            fetch_all_pages(fetch)
        assert calls == [1]
