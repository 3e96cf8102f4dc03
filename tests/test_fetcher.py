from unittest.mock import Mock

import pytest
import requests

from renderer.errors import FetchError
from renderer.fetcher import BROWSER_HEADERS, fetch_html, is_http_url

URL = "https://example.com/story"


def _response(status=200, text="<html><body>ok</body></html>", content_type="text/html; charset=utf-8"):
    response = Mock()
    response.status_code = status
    response.headers = {"Content-Type": content_type}
    response.text = text
    response.apparent_encoding = "windows-1252"
    return response


class TestIsHttpUrl:
    @pytest.mark.parametrize("value", ["https://example.com/a", "http://example.com"])
    def test_accepts_http_urls(self, value):
        assert is_http_url(value)

    @pytest.mark.parametrize("value", ["", None, "ftp://example.com/a", "/relative/path", "data:image/png;base64,xx"])
    def test_rejects_everything_else(self, value):
        assert not is_http_url(value)


class TestFetchHtml:
    def test_returns_body_with_browser_headers(self):
        session = Mock()
        session.get.return_value = _response()

        assert fetch_html(URL, session=session, timeout=3) == "<html><body>ok</body></html>"

        _, kwargs = session.get.call_args
        assert kwargs["headers"]["User-Agent"] == BROWSER_HEADERS["User-Agent"]
        assert kwargs["timeout"] == 3
        session.get.return_value.close.assert_called_once()

    def test_guesses_encoding_without_charset(self):
        session = Mock()
        response = _response(content_type="text/html")
        session.get.return_value = response

        fetch_html(URL, session=session)

        assert response.encoding == "windows-1252"

    def test_non_2xx_is_fetch_error(self):
        session = Mock()
        session.get.return_value = _response(status=404)

        with pytest.raises(FetchError, match="404"):
            fetch_html(URL, session=session)
        session.get.return_value.close.assert_called_once()

    def test_timeout_is_fetch_error(self):
        session = Mock()
        session.get.side_effect = requests.Timeout("slow")

        with pytest.raises(FetchError, match="Timed out"):
            fetch_html(URL, session=session, timeout=2)

    def test_connection_error_is_fetch_error(self):
        session = Mock()
        session.get.side_effect = requests.ConnectionError("refused")

        with pytest.raises(FetchError, match="refused"):
            fetch_html(URL, session=session)

    def test_invalid_url_is_rejected_before_any_request(self):
        session = Mock()

        with pytest.raises(FetchError):
            fetch_html("not a url", session=session)
        session.get.assert_not_called()

    def test_timeout_comes_from_environment(self, monkeypatch):
        monkeypatch.setenv("READER_FETCH_TIMEOUT", "7")
        session = Mock()
        session.get.return_value = _response()

        fetch_html(URL, session=session)

        assert session.get.call_args[1]["timeout"] == 7.0
