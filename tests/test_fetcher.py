"""Unit tests for ListFetcher."""

import threading
from unittest.mock import MagicMock, patch

import pytest
import requests

from ikuai_sync.cli import FetchError, ListFetcher


def test_fetch_returns_trimmed_non_empty_lines() -> None:
    """Blank lines are dropped and whitespace around entries is trimmed."""
    fetcher = ListFetcher(timeout=5)

    with patch.object(fetcher._session, "get") as mock_get:
        response = MagicMock()
        response.raise_for_status = MagicMock()
        response.text = "1.1.1.1\n\n   2.2.2.0/24  \r\n\t\n3.3.3.3"
        mock_get.return_value = response

        lines = fetcher.fetch("https://lists.example.com/cn.txt")

        assert lines == ["1.1.1.1", "2.2.2.0/24", "3.3.3.3"]
        mock_get.assert_called_once_with("https://lists.example.com/cn.txt", timeout=5)


def test_fetch_connection_error_raises_fetch_error() -> None:
    fetcher = ListFetcher()

    with patch.object(fetcher._session, "get") as mock_get:
        mock_get.side_effect = requests.exceptions.ConnectionError("Connection refused")

        with pytest.raises(FetchError, match="Connection refused"):
            fetcher.fetch("https://lists.example.com/cn.txt")


def test_fetch_http_error_raises_fetch_error() -> None:
    """Non-2xx responses are fetch failures."""
    fetcher = ListFetcher()

    with patch.object(fetcher._session, "get") as mock_get:
        response = MagicMock()
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("404 Not Found")
        mock_get.return_value = response

        with pytest.raises(FetchError, match="404"):
            fetcher.fetch("https://lists.example.com/missing.txt")


def test_fetch_skips_tls_verification_when_disabled() -> None:
    fetcher = ListFetcher(verify_tls=False)

    assert fetcher._session.verify is False


def test_each_thread_gets_its_own_session() -> None:
    """Jobs run on scheduler worker threads and must not share a session."""
    fetcher = ListFetcher(verify_tls=False)
    main_session = fetcher._session
    seen = []

    worker = threading.Thread(target=lambda: seen.append(fetcher._session))
    worker.start()
    worker.join()

    assert fetcher._session is main_session
    assert seen[0] is not main_session
    assert seen[0].verify is False
    assert seen[0].headers["User-Agent"] == "ikuai-sync"
